from app.skplan import create_app

app = create_app()
