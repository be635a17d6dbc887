import json
from pathlib import Path

import pytest

from leadflow.schemas.flow import FlowTemplate, InvalidTemplateError, Step, StepKind, Transition, default_handle
from leadflow.services.flow_graph import is_declared_handle, resolve_transition
from leadflow.services.template_service import (
    FileTemplateRepository,
    InMemoryTemplateRepository,
    TemplateNotFoundError,
    parse_template,
)

TEMPLATES_DIR = Path(__file__).resolve().parent.parent / "templates"


def simple_template(**overrides) -> FlowTemplate:
    data = {
        "id": "welcome",
        "steps": [
            Step(id="start", kind=StepKind.START),
            Step(id="ask", kind=StepKind.CONDITIONAL, config={"variable": "budget", "operator": "exists"}),
            Step(id="bye", kind=StepKind.END),
        ],
        "transitions": [
            Transition(source="start", handle="next", target="ask"),
            Transition(source="ask", handle="yes", target="bye"),
        ],
    }
    data.update(overrides)
    return FlowTemplate(**data)


class TestFlowTemplateValidation:
    def test_valid_template(self):
        template = simple_template()
        assert template.start_step.id == "start"
        assert template.has_step("bye")

    def test_empty_steps_rejected(self):
        with pytest.raises(InvalidTemplateError):
            simple_template(steps=[], transitions=[])

    def test_duplicate_step_ids_rejected(self):
        with pytest.raises(InvalidTemplateError):
            simple_template(steps=[Step(id="a", kind=StepKind.START), Step(id="a", kind=StepKind.END)], transitions=[])

    def test_unknown_target_rejected(self):
        with pytest.raises(InvalidTemplateError):
            simple_template(transitions=[Transition(source="start", handle="next", target="missing")])

    def test_handle_not_declared_for_kind_rejected(self):
        with pytest.raises(InvalidTemplateError):
            simple_template(transitions=[Transition(source="start", handle="yes", target="bye")])

    def test_two_transitions_on_same_handle_rejected(self):
        with pytest.raises(InvalidTemplateError):
            simple_template(
                transitions=[
                    Transition(source="start", handle="next", target="ask"),
                    Transition(source="start", handle="next", target="bye"),
                ]
            )

    def test_start_step_id_must_exist(self):
        with pytest.raises(InvalidTemplateError):
            simple_template(start_step_id="nowhere")

    def test_start_step_falls_back_to_first_step(self):
        template = FlowTemplate(id="t", steps=[Step(id="hello", kind=StepKind.MESSAGE)])
        assert template.start_step.id == "hello"

    def test_template_is_immutable(self):
        template = simple_template()
        with pytest.raises(Exception):
            template.id = "other"


class TestFlowGraph:
    def test_resolve_transition(self):
        template = simple_template()
        assert resolve_transition(template, "start", "next") == "ask"

    def test_missing_transition_ends_flow(self):
        template = simple_template()
        assert resolve_transition(template, "ask", "no") is None

    def test_undeclared_handle_has_no_target(self):
        template = simple_template()
        assert resolve_transition(template, "start", "success") is None

    def test_default_handle_is_failure_branch(self):
        assert default_handle(StepKind.BOOK_APPOINTMENT) == "failure"
        assert default_handle(StepKind.AI_RESPONSE) == "error"
        assert default_handle(StepKind.CHECK_AVAILABILITY) == "unavailable"

    def test_is_declared_handle(self):
        assert is_declared_handle(StepKind.LEAD_QUALIFICATION, "medium")
        assert not is_declared_handle(StepKind.LEAD_QUALIFICATION, "next")


class TestParseTemplate:
    def test_native_format(self):
        template = parse_template(
            "demo",
            {
                "name": "Demo",
                "steps": [{"id": "s1", "kind": "message", "config": {"message": "Hola"}}, {"id": "s2", "kind": "end"}],
                "transitions": [{"source": "s1", "target": "s2"}],
            },
        )
        assert template.id == "demo"
        assert template.transitions[0].handle == "next"

    def test_react_flow_format(self):
        template = parse_template(
            "rf",
            {
                "nodes": [
                    {"id": "1", "type": "startNode", "data": {}},
                    {"id": "2", "type": "lead-qualification", "data": {"questions": []}},
                    {"id": "3", "type": "endNode", "data": {}},
                ],
                "edges": [
                    {"source": "1", "target": "2"},
                    {"source": "2", "sourceHandle": "high", "target": "3"},
                ],
            },
        )
        assert template.get_step("2").kind == StepKind.LEAD_QUALIFICATION
        assert resolve_transition(template, "2", "high") == "3"

    def test_unknown_kind_rejected(self):
        with pytest.raises(InvalidTemplateError):
            parse_template("bad", {"steps": [{"id": "s1", "kind": "teleport"}]})

    def test_missing_field_rejected(self):
        with pytest.raises(InvalidTemplateError):
            parse_template("bad", {"steps": [{"kind": "message"}]})

    def test_non_mapping_rejected(self):
        with pytest.raises(InvalidTemplateError):
            parse_template("bad", ["not", "a", "mapping"])


class TestTemplateRepositories:
    def test_in_memory_lookup(self):
        repo = InMemoryTemplateRepository([simple_template()])
        assert repo.get("welcome").id == "welcome"
        with pytest.raises(TemplateNotFoundError):
            repo.get("missing")

    def test_file_repository_loads_bundled_yaml(self):
        repo = FileTemplateRepository(str(TEMPLATES_DIR))
        template = repo.get("real_estate_welcome")
        assert template.start_step.id == "welcome"
        assert resolve_transition(template, "availability", "available") == "ask_slot"
        assert template.get_step("book").kind == StepKind.BOOK_APPOINTMENT

    def test_file_repository_loads_json(self, tmp_path):
        (tmp_path / "tiny.json").write_text(
            json.dumps({"steps": [{"id": "only", "kind": "end"}]}), encoding="utf-8"
        )
        repo = FileTemplateRepository(str(tmp_path))
        assert repo.get("tiny").get_step("only").kind == StepKind.END

    def test_file_repository_caches_until_reload(self, tmp_path):
        path = tmp_path / "flow.yaml"
        path.write_text("steps:\n  - {id: a, kind: end}\n", encoding="utf-8")
        repo = FileTemplateRepository(str(tmp_path))
        assert repo.get("flow").has_step("a")

        path.write_text("steps:\n  - {id: b, kind: end}\n", encoding="utf-8")
        assert repo.get("flow").has_step("a")

        repo.reload()
        assert repo.get("flow").has_step("b")

    def test_file_repository_rejects_path_traversal(self, tmp_path):
        repo = FileTemplateRepository(str(tmp_path))
        with pytest.raises(TemplateNotFoundError):
            repo.get("../secrets")

    def test_malformed_yaml_is_invalid_template(self, tmp_path):
        (tmp_path / "broken.yaml").write_text("steps: [ {id: a, kind: message\n", encoding="utf-8")
        repo = FileTemplateRepository(str(tmp_path))

        with pytest.raises(InvalidTemplateError) as excinfo:
            repo.get("broken")

        assert "broken" in str(excinfo.value)

    def test_malformed_json_is_invalid_template(self, tmp_path):
        (tmp_path / "broken.json").write_text('{"steps": [', encoding="utf-8")
        repo = FileTemplateRepository(str(tmp_path))

        with pytest.raises(InvalidTemplateError):
            repo.get("broken")
