"""
Content schemas for the three planning document kinds.

Content is plain JSON (sections -> rows -> line items). Each kind has a default
shape, a load-time migration from older shapes, and a set of derived totals that
are recomputed from their sub-lists after every change. Edits address content by
path, e.g. ``centers[2].projects[0].expenses[1].cost``.
"""

from __future__ import annotations

import copy
import re
from typing import Any

from app.skplan.errors import ValidationError
from app.skplan.modules.planning_documents.models import DocumentKind

SCHEMA_VERSION = 2

CENTERS_OF_PARTICIPATION = (
    "Health",
    "Education",
    "Economic Empowerment",
    "Social Inclusion and Equity",
    "Peace-Building and Security",
    "Governance",
    "Active Citizenship",
    "Environment",
    "Global Mobility",
    "Agriculture",
)

EXPENDITURE_CLASSES = ("MOOE", "CO", "PS")

_AS_NEEDED = "January - December (as needed)"


def _budget_item(name: str, description: str, klass: str, duration: str = _AS_NEEDED) -> dict:
    return {
        "item_name": name,
        "item_description": description,
        "expenditure_class": klass,
        "amount": 0,
        "duration": duration,
    }


def empty_cbydp_project() -> dict:
    return {
        "project_name": "",
        "objectives": "",
        "activities": "",
        "target_beneficiaries": "",
        "timeline": "",
        "funding_source": "",
        "expenses": [],
        "budget_requirement": 0,
    }


def empty_abyip_project() -> dict:
    return {
        "reference_code": "",
        "project_name": "",
        "description": "",
        "expected_result": "",
        "performance_indicator": "",
        "period_of_implementation": "",
        "responsible_person": "",
        "expenses": [],
        "mooe_total": 0,
        "co_total": 0,
        "ps_total": 0,
        "total": 0,
    }


def default_content(kind: DocumentKind) -> dict:
    if kind == DocumentKind.YOUTH_DEVELOPMENT_PLAN:
        return {
            "schema_version": SCHEMA_VERSION,
            "centers": [
                {"center_name": name, "agenda_statement": "", "projects": [empty_cbydp_project()]}
                for name in CENTERS_OF_PARTICIPATION
            ],
        }
    if kind == DocumentKind.INVESTMENT_PROGRAM:
        return {
            "schema_version": SCHEMA_VERSION,
            "total_budget": 0,
            "centers": [
                {"center_name": name, "projects": [empty_abyip_project()]}
                for name in CENTERS_OF_PARTICIPATION
            ],
        }
    return {
        "schema_version": SCHEMA_VERSION,
        "sk_resolution_no": "",
        "barangay_appropriation_ordinance_no": "",
        "barangay_budget_percentage": 10.0,
        "total_budget": 0,
        "receipts": [
            {
                "source_description": "Ten percent (10%) of the general fund of the Barangay",
                "duration": "January - December",
                "mooe_amount": 0,
                "co_amount": 0,
                "total_amount": 0,
            }
        ],
        "programs": [
            {
                "program_name": "General Administration Program",
                "program_type": "general_administration",
                "mooe_total": 0,
                "co_total": 0,
                "ps_total": 0,
                "total_amount": 0,
                "items": [
                    _budget_item("Travelling Expenses", "", "MOOE"),
                    _budget_item("Office Supplies Expenses", "", "MOOE"),
                    _budget_item("Water Expenses", "", "MOOE"),
                    _budget_item("Electricity Expenses", "", "MOOE"),
                    _budget_item("Advertising Expenses", "", "MOOE"),
                    _budget_item("Office Equipment", "", "CO"),
                ],
            },
            {
                "program_name": "SK Youth Development and Empowerment Program",
                "program_type": "youth_development",
                "mooe_total": 0,
                "co_total": 0,
                "ps_total": 0,
                "total_amount": 0,
                "items": [
                    _budget_item(
                        "Skills training, summer employment, on-the-job training, and livelihood assistance",
                        "Livelihood projects for out-of-school youth",
                        "MOOE",
                        "March - June",
                    ),
                    _budget_item("Sports and wellness projects", "Sports Activity", "MOOE", "April - May (as needed)"),
                    _budget_item(
                        "Capacity-building for grassroots organization and leadership",
                        "Seminar on the Handbook on the Financial Transaction of the Sangguniang Kabataan",
                        "MOOE",
                        "January - March",
                    ),
                    _budget_item("Health Programs", "Youth Health Awareness Campaign", "MOOE"),
                    _budget_item("Education Support", "School Supplies Distribution", "MOOE"),
                    _budget_item("Environmental Projects", "Tree Planting Activity", "CO"),
                ],
            },
        ],
    }


def to_number(value: Any) -> float:
    """Accepts numbers and form strings like "1,250.50"; blank counts as zero."""
    if value is None or isinstance(value, bool):
        return 0.0
    if isinstance(value, (int, float)):
        return float(value)
    raw = str(value).replace(",", "").strip()
    if not raw:
        return 0.0
    try:
        return float(raw)
    except ValueError:
        raise ValidationError(f"Not a number: {value!r}") from None


def _sum(rows: list, key: str) -> float:
    return round(sum(to_number(r.get(key)) for r in rows if isinstance(r, dict)), 2)


def recompute_derived(kind: DocumentKind, content: dict) -> dict:
    """Recompute combined fields from their sub-lists, in place."""
    if kind == DocumentKind.BUDGET:
        for receipt in content.get("receipts") or []:
            receipt["total_amount"] = round(to_number(receipt.get("mooe_amount")) + to_number(receipt.get("co_amount")), 2)
        for program in content.get("programs") or []:
            items = program.get("items") or []
            for klass in EXPENDITURE_CLASSES:
                program[f"{klass.lower()}_total"] = _sum([i for i in items if i.get("expenditure_class") == klass], "amount")
            program["total_amount"] = round(program["mooe_total"] + program["co_total"] + program["ps_total"], 2)
        content["total_budget"] = _sum(content.get("programs") or [], "total_amount")
    elif kind == DocumentKind.INVESTMENT_PROGRAM:
        for center in content.get("centers") or []:
            for project in center.get("projects") or []:
                expenses = project.get("expenses") or []
                project["mooe_total"] = _sum(expenses, "mooe")
                project["co_total"] = _sum(expenses, "co")
                project["ps_total"] = _sum(expenses, "ps")
                project["total"] = round(project["mooe_total"] + project["co_total"] + project["ps_total"], 2)
    else:
        for center in content.get("centers") or []:
            for project in center.get("projects") or []:
                project["budget_requirement"] = _sum(project.get("expenses") or [], "cost")
    return content


def _migrate_v1(kind: DocumentKind, content: dict) -> None:
    # v1 stored combined amounts as free values and had no expense lines.
    if kind == DocumentKind.YOUTH_DEVELOPMENT_PLAN:
        for center in content.get("centers") or []:
            for project in center.get("projects") or []:
                if "expenses" not in project:
                    amount = to_number(project.get("budget_requirement"))
                    project["expenses"] = [{"description": "Budget requirement", "cost": amount}] if amount else []
    elif kind == DocumentKind.INVESTMENT_PROGRAM:
        for center in content.get("centers") or []:
            for project in center.get("projects") or []:
                if "expenses" not in project:
                    line = {k: to_number(project.pop(k, 0)) for k in ("mooe", "co", "ps")}
                    project["expenses"] = [{"description": "", **line}] if any(line.values()) else []


def migrate_content(kind: DocumentKind, content: dict | None) -> dict:
    """Upgrade stored content to the current schema. Returns a new dict."""
    migrated = copy.deepcopy(content) if content else {}
    version = int(migrated.get("schema_version") or 1)
    if version > SCHEMA_VERSION:
        raise ValidationError(f"Content schema {version} is newer than supported ({SCHEMA_VERSION}).")
    for key, value in default_content(kind).items():
        migrated.setdefault(key, value)
    if version < 2:
        _migrate_v1(kind, migrated)
    migrated["schema_version"] = SCHEMA_VERSION
    return recompute_derived(kind, migrated)


_SEGMENT = re.compile(r"^([A-Za-z_][A-Za-z0-9_]*)((?:\[\d+\])*)$")
_INDEX = re.compile(r"\[(\d+)\]")


def parse_path(path: str) -> list[str | int]:
    """
    Split an edit path into keys and list indexes.

    >>> parse_path("centers[2].projects[0].expenses[1].cost")
    ['centers', 2, 'projects', 0, 'expenses', 1, 'cost']
    """
    if not path or not isinstance(path, str):
        raise ValidationError("Edit path is required.")
    tokens: list[str | int] = []
    for segment in path.split("."):
        m = _SEGMENT.match(segment)
        if not m:
            raise ValidationError(f"Invalid edit path: {path!r}")
        tokens.append(m.group(1))
        tokens.extend(int(i) for i in _INDEX.findall(m.group(2)))
    if tokens[0] == "schema_version":
        raise ValidationError("schema_version is not editable.")
    return tokens


def format_path(tokens: list[str | int]) -> str:
    out = ""
    for t in tokens:
        if isinstance(t, int):
            out += f"[{t}]"
        else:
            out += f".{t}" if out else t
    return out


def get_path(content: Any, tokens: list[str | int]) -> Any:
    node = content
    for t in tokens:
        if isinstance(t, int):
            if not isinstance(node, list) or t >= len(node):
                raise ValidationError(f"No row at {format_path(tokens)}")
        elif not isinstance(node, dict) or t not in node:
            raise ValidationError(f"No field at {format_path(tokens)}")
        node = node[t]
    return node


def set_path(content: dict, tokens: list[str | int], value: Any) -> None:
    """Set one value. An index equal to the list length appends a new row."""
    parent = get_path(content, tokens[:-1])
    last = tokens[-1]
    if isinstance(last, int):
        if not isinstance(parent, list):
            raise ValidationError(f"Not a list: {format_path(tokens[:-1])}")
        if last < len(parent):
            parent[last] = copy.deepcopy(value)
        elif last == len(parent):
            parent.append(copy.deepcopy(value))
        else:
            raise ValidationError(f"Row index out of range: {format_path(tokens)}")
    else:
        if not isinstance(parent, dict):
            raise ValidationError(f"Not an object: {format_path(tokens[:-1])}")
        parent[last] = copy.deepcopy(value)


def apply_patches(content: dict, patches: dict[str, Any]) -> dict:
    """Apply path -> value patches in order, in place."""
    for path, value in patches.items():
        set_path(content, parse_path(path), value)
    return content


def diff_paths(base: Any, new: Any, prefix: list[str | int] | None = None) -> dict[str, Any]:
    """
    Leaf-level differences between two content trees, as path -> new value.

    Lists that changed length are reported whole; keys missing from ``new`` are ignored.
    """
    prefix = prefix or []
    if isinstance(base, dict) and isinstance(new, dict):
        out: dict[str, Any] = {}
        for key, value in new.items():
            if key == "schema_version" and not prefix:
                continue
            if key not in base:
                out[format_path(prefix + [key])] = value
            else:
                out.update(diff_paths(base[key], value, prefix + [key]))
        return out
    if isinstance(base, list) and isinstance(new, list) and len(base) == len(new):
        out = {}
        for i, (b, n) in enumerate(zip(base, new)):
            out.update(diff_paths(b, n, prefix + [i]))
        return out
    if base == new or not prefix:
        return {}
    return {format_path(prefix): new}
