"""
Stage catalog — bundled process definitions and order invariants.
"""

from datetime import timedelta

import pytest

from dealerflow.core.exceptions import CatalogDefinitionError, UnknownProcessType, UnknownStage
from dealerflow.domain import ProcessDefinition, StageDefinition
from dealerflow.services.requirements import FieldPresent
from dealerflow.services.stage_catalog import StageCatalog, process_from_dict


def _stage(stage_id, order, role="sales_rep", hours=24):
    return StageDefinition(stage_id, order, stage_id.title(), role, estimated_duration=timedelta(hours=hours))


class TestBundledCatalog:
    def test_all_process_types_loaded(self, catalog):
        assert catalog.process_types() == [
            "customer-journey",
            "lead-to-quote",
            "order-fulfillment",
            "proposal-to-contract",
            "quote-to-proposal",
            "service-completion",
        ]

    @pytest.mark.parametrize("process_type", [
        "lead-to-quote", "quote-to-proposal", "proposal-to-contract",
        "order-fulfillment", "service-completion", "customer-journey",
    ])
    def test_stage_orders_are_contiguous(self, catalog, process_type):
        stages = catalog.stages_for(process_type)
        assert [s.order for s in stages] == list(range(1, len(stages) + 1))
        assert len({s.stage_id for s in stages}) == len(stages)

    def test_lead_to_quote_sequence(self, catalog):
        ids = [s.stage_id for s in catalog.stages_for("lead-to-quote")]
        assert ids == ["qualification", "assessment", "solution-design", "quote-generation"]
        assert catalog.first_stage("lead-to-quote").stage_id == "qualification"
        assert catalog.terminal_stage("lead-to-quote").stage_id == "quote-generation"

    def test_next_stage(self, catalog):
        assert catalog.next_stage("lead-to-quote", "qualification").stage_id == "assessment"
        assert catalog.next_stage("lead-to-quote", "quote-generation") is None

    def test_is_terminal(self, catalog):
        assert catalog.is_terminal("service-completion", "closed")
        assert not catalog.is_terminal("service-completion", "dispatch")

    def test_remaining_stages_inclusive(self, catalog):
        remaining = catalog.remaining_stages("lead-to-quote", "assessment")
        assert [s.stage_id for s in remaining] == ["assessment", "solution-design", "quote-generation"]

    def test_requirement_labels_in_definition_order(self, catalog):
        stage = catalog.get_stage("lead-to-quote", "qualification")
        assert [r.label for r in stage.requirements] == [
            "Contact information verified",
            "Business type confirmed",
            "Budget range discussed",
            "Timeline requirements understood",
        ]

    def test_durations_loaded_from_hours(self, catalog):
        assert catalog.get_stage("lead-to-quote", "assessment").estimated_duration == timedelta(hours=48)

    def test_blocker_gated_stages(self, catalog):
        assert catalog.get_stage("proposal-to-contract", "signature-collection").blockers_gate_advancement
        assert not catalog.get_stage("proposal-to-contract", "contract-preparation").blockers_gate_advancement

    def test_terminal_stages_carry_no_gate(self, catalog):
        for process in catalog.processes():
            terminal = process.stages[-1]
            assert terminal.requirements == (), process.process_type
            assert not terminal.blockers_gate_advancement, process.process_type

    def test_quote_checks_gate_solution_design(self, catalog):
        labels = [r.label for r in catalog.get_stage("lead-to-quote", "solution-design").requirements]
        assert "All line items priced correctly" in labels
        assert "Manager approval if required" in labels

    def test_customer_journey_sequence(self, catalog):
        ids = [s.stage_id for s in catalog.stages_for("customer-journey")]
        assert ids[0] == "contract-signed"
        assert ids[-1] == "maintenance-monitoring"
        assert ids.index("delivered") < ids.index("installation") < ids.index("acceptance")
        assert catalog.get_stage("customer-journey", "payment-confirmed").assigned_role == "accounting"
        assert catalog.resolve_process_type("contract-to-onboarding") == "customer-journey"

    def test_unknown_process_type(self, catalog):
        with pytest.raises(UnknownProcessType):
            catalog.stages_for("lease-renewal")

    def test_unknown_stage(self, catalog):
        with pytest.raises(UnknownStage):
            catalog.get_stage("lead-to-quote", "negotiation")

    def test_validation_aliases(self, catalog):
        assert catalog.resolve_process_type("po-to-warehouse") == "order-fulfillment"
        assert catalog.resolve_process_type("kitting-to-delivery") == "order-fulfillment"
        assert catalog.resolve_process_type("lead-qualification") == "lead-to-quote"
        assert catalog.resolve_process_type("service-completion") == "service-completion"
        with pytest.raises(UnknownProcessType):
            catalog.resolve_process_type("nope")

    def test_process_to_dict(self, catalog):
        data = catalog.get_process("quote-to-proposal").to_dict()
        assert data["stage_count"] == 4
        assert data["stages"][2]["assigned_role"] == "legal"
        assert data["stages"][3]["requirements"] == []
        assert "stages" not in catalog.get_process("quote-to-proposal").to_dict(include_stages=False)


class TestDefinitionValidation:
    def test_rejects_single_stage(self):
        with pytest.raises(CatalogDefinitionError):
            StageCatalog([ProcessDefinition("x", "X", (_stage("only", 1),))])

    def test_rejects_order_gap(self):
        stages = (_stage("a", 1), _stage("b", 3))
        with pytest.raises(CatalogDefinitionError, match="without gaps"):
            StageCatalog([ProcessDefinition("x", "X", stages)])

    def test_rejects_duplicate_stage_ids(self):
        stages = (_stage("a", 1), _stage("a", 2))
        with pytest.raises(CatalogDefinitionError, match="duplicate"):
            StageCatalog([ProcessDefinition("x", "X", stages)])

    def test_rejects_requirements_on_terminal_stage(self):
        done = StageDefinition("done", 2, "Done", "sales_rep",
                               requirements=(FieldPresent("signed", "Receipt signed"),))
        with pytest.raises(CatalogDefinitionError, match="terminal stage 'done'"):
            StageCatalog([ProcessDefinition("x", "X", (_stage("a", 1), done))])

    def test_rejects_blocker_gate_on_terminal_stage(self):
        done = StageDefinition("done", 2, "Done", "sales_rep", blockers_gate_advancement=True)
        with pytest.raises(CatalogDefinitionError, match="move them to 'a'"):
            StageCatalog([ProcessDefinition("x", "X", (_stage("a", 1), done))])

    def test_rejects_duplicate_registration(self):
        process = ProcessDefinition("x", "X", (_stage("a", 1), _stage("b", 2)))
        catalog = StageCatalog([process])
        with pytest.raises(CatalogDefinitionError):
            catalog.register(process)

    def test_from_dict_sorts_by_order(self):
        process = process_from_dict({
            "process_type": "x",
            "title": "X",
            "stages": [
                {"stage_id": "b", "order": 2, "name": "B", "assigned_role": "r"},
                {"stage_id": "a", "order": 1, "name": "A", "assigned_role": "r",
                 "requirements": [{"type": "field_present", "field": "f", "name": "F set"}]},
            ],
        })
        assert [s.stage_id for s in process.stages] == ["a", "b"]
        assert process.stages[0].requirements[0].label == "F set"

    def test_from_dict_unknown_requirement_type(self):
        with pytest.raises(CatalogDefinitionError):
            process_from_dict({
                "process_type": "x",
                "title": "X",
                "stages": [
                    {"stage_id": "a", "order": 1, "name": "A", "assigned_role": "r",
                     "requirements": [{"type": "regex", "field": "f"}]},
                    {"stage_id": "b", "order": 2, "name": "B", "assigned_role": "r"},
                ],
            })

    def test_from_directory_custom(self, tmp_path):
        (tmp_path / "x.json").write_text(
            '{"process_type": "x", "title": "X", "validation_aliases": ["x-check"], "stages": ['
            '{"stage_id": "a", "order": 1, "name": "A", "assigned_role": "r"},'
            '{"stage_id": "b", "order": 2, "name": "B", "assigned_role": "r"}]}',
            encoding="utf-8",
        )
        catalog = StageCatalog.from_directory(tmp_path)
        assert catalog.process_types() == ["x"]
        assert catalog.resolve_process_type("x-check") == "x"
