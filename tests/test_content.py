"""
Unit tests for planning document content.

Tests cover:
- Default shapes per kind
- Derived totals
- Migration of schema v1 content
- Edit paths and diffs
"""

import pytest

from app.skplan.errors import ValidationError
from app.skplan.modules.planning_documents.content import (
    CENTERS_OF_PARTICIPATION,
    SCHEMA_VERSION,
    apply_patches,
    default_content,
    diff_paths,
    format_path,
    migrate_content,
    parse_path,
    recompute_derived,
    to_number,
)
from app.skplan.modules.planning_documents.models import DocumentKind

CBYDP = DocumentKind.YOUTH_DEVELOPMENT_PLAN
ABYIP = DocumentKind.INVESTMENT_PROGRAM
BUDGET = DocumentKind.BUDGET


class TestDefaults:
    def test_plans_have_one_section_per_center(self):
        for kind in (CBYDP, ABYIP):
            content = default_content(kind)
            assert content["schema_version"] == SCHEMA_VERSION
            assert [c["center_name"] for c in content["centers"]] == list(CENTERS_OF_PARTICIPATION)
            assert all(len(c["projects"]) == 1 for c in content["centers"])

    def test_budget_has_two_programs(self):
        content = default_content(BUDGET)
        assert [p["program_type"] for p in content["programs"]] == ["general_administration", "youth_development"]
        assert len(content["receipts"]) == 1

    def test_defaults_are_fresh_copies(self):
        a = default_content(BUDGET)
        a["programs"][0]["items"].clear()
        assert len(default_content(BUDGET)["programs"][0]["items"]) == 6


class TestDerivedTotals:
    def test_budget_totals_by_class(self):
        content = default_content(BUDGET)
        items = content["programs"][1]["items"]
        items[0]["amount"] = "12,500.50"
        items[1]["amount"] = 2000
        items[5]["amount"] = 3000  # CO
        content["receipts"][0]["mooe_amount"] = 40000
        content["receipts"][0]["co_amount"] = "5,000"
        recompute_derived(BUDGET, content)

        program = content["programs"][1]
        assert program["mooe_total"] == 14500.5
        assert program["co_total"] == 3000
        assert program["ps_total"] == 0
        assert program["total_amount"] == 17500.5
        assert content["receipts"][0]["total_amount"] == 45000

    def test_budget_total_is_sum_of_program_totals(self):
        content = default_content(BUDGET)
        content["total_budget"] = 999
        content["programs"][0]["items"][0]["amount"] = 100
        content["programs"][1]["items"][5]["amount"] = 50  # CO
        recompute_derived(BUDGET, content)
        assert content["total_budget"] == 150

    def test_abyip_project_totals(self):
        content = default_content(ABYIP)
        project = content["centers"][0]["projects"][0]
        project["expenses"] = [
            {"description": "Venue", "mooe": 1000, "co": 0, "ps": 0},
            {"description": "Sound system", "mooe": 0, "co": 2500, "ps": 0},
            {"description": "Facilitator", "mooe": 0, "co": 0, "ps": "750"},
        ]
        recompute_derived(ABYIP, content)
        assert (project["mooe_total"], project["co_total"], project["ps_total"], project["total"]) == (
            1000,
            2500,
            750,
            4250,
        )

    def test_cbydp_budget_requirement_is_sum_of_expenses(self):
        content = default_content(CBYDP)
        project = content["centers"][3]["projects"][0]
        project["expenses"] = [{"description": "Kits", "cost": 300}, {"description": "Snacks", "cost": 200}]
        recompute_derived(CBYDP, content)
        assert project["budget_requirement"] == 500

    def test_to_number(self):
        assert to_number("1,250.50") == 1250.5
        assert to_number("") == 0
        assert to_number(None) == 0
        with pytest.raises(ValidationError):
            to_number("twelve")


class TestMigration:
    def test_v1_abyip_free_amounts_become_an_expense_line(self):
        v1 = {
            "total_budget": 50000,
            "centers": [
                {
                    "center_name": "Health",
                    "projects": [{"project_name": "Clinic day", "mooe": "1,000", "co": 500, "ps": 0}],
                }
            ],
        }
        migrated = migrate_content(ABYIP, v1)
        project = migrated["centers"][0]["projects"][0]
        assert migrated["schema_version"] == SCHEMA_VERSION
        assert project["expenses"] == [{"description": "", "mooe": 1000, "co": 500, "ps": 0}]
        assert project["total"] == 1500
        assert "mooe" not in project
        # the stored value is not touched
        assert "expenses" not in v1["centers"][0]["projects"][0]

    def test_v1_cbydp_budget_requirement_is_kept(self):
        v1 = {"centers": [{"center_name": "Health", "projects": [{"project_name": "Drive", "budget_requirement": 800}]}]}
        project = migrate_content(CBYDP, v1)["centers"][0]["projects"][0]
        assert project["expenses"] == [{"description": "Budget requirement", "cost": 800}]
        assert project["budget_requirement"] == 800

    def test_missing_content_migrates_to_default(self):
        assert migrate_content(BUDGET, None)["programs"] == recompute_derived(BUDGET, default_content(BUDGET))["programs"]

    def test_newer_schema_is_refused(self):
        with pytest.raises(ValidationError):
            migrate_content(BUDGET, {"schema_version": SCHEMA_VERSION + 1})


class TestPaths:
    def test_parse_and_format_round_trip(self):
        tokens = parse_path("centers[2].projects[0].expenses[1].cost")
        assert tokens == ["centers", 2, "projects", 0, "expenses", 1, "cost"]
        assert format_path(tokens) == "centers[2].projects[0].expenses[1].cost"

    @pytest.mark.parametrize("bad", ["", "a..b", "1abc", "a[x]", "schema_version", "a[0]b"])
    def test_invalid_paths(self, bad):
        with pytest.raises(ValidationError):
            parse_path(bad)

    def test_apply_patches_sets_and_appends(self):
        content = default_content(CBYDP)
        apply_patches(
            content,
            {
                "centers[0].agenda_statement": "Healthy youth",
                "centers[0].projects[0].expenses[0]": {"description": "Kits", "cost": 100},
            },
        )
        assert content["centers"][0]["agenda_statement"] == "Healthy youth"
        assert content["centers"][0]["projects"][0]["expenses"] == [{"description": "Kits", "cost": 100}]

        with pytest.raises(ValidationError):
            apply_patches(content, {"centers[0].projects[0].expenses[5]": {}})
        with pytest.raises(ValidationError):
            apply_patches(content, {"centers[99].agenda_statement": "x"})

    def test_diff_paths_reports_leaves_and_resized_lists(self):
        base = default_content(BUDGET)
        new = default_content(BUDGET)
        new["sk_resolution_no"] = "2025-001"
        new["programs"][0]["items"][2]["amount"] = 900
        new["receipts"].append({"source_description": "Donation", "mooe_amount": 100, "co_amount": 0})
        new["schema_version"] = 99

        changes = diff_paths(base, new)
        assert changes == {
            "sk_resolution_no": "2025-001",
            "programs[0].items[2].amount": 900,
            "receipts": new["receipts"],
        }
