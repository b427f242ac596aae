"""
Planning documents (CBYDP, ABYIP, Budget).

- One canonical document per kind and year; roster kept on the slot across cycles
- Status changes only through the workflow engine, each one conditional on the state it replaces
- Content saved field by field; approved documents are read-only
- Every transition and save is recorded to the append-only activity log
"""
