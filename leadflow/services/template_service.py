"""Flow template loading.

Templates come in two shapes:

* native: ``{name, start_step_id, steps: [{id, kind, config}], transitions: [{source, handle, target}]}``
* react-flow export: ``{nodes: [{id, type, data}], edges: [{source, sourceHandle, target}]}``

Both are parsed into an immutable FlowTemplate, which validates the graph.
"""

import json
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Optional

import yaml

from leadflow.logging_config import get_logger
from leadflow.schemas.flow import (
    REACT_FLOW_KIND_ALIASES,
    FlowTemplate,
    InvalidTemplateError,
    Step,
    StepKind,
    Transition,
)

logger = get_logger("template_service")


class TemplateNotFoundError(Exception):
    def __init__(self, template_id: str):
        self.template_id = template_id
        super().__init__(f"Flow template not found: {template_id}")


def _resolve_kind(raw_kind: Any, step_id: str) -> StepKind:
    if isinstance(raw_kind, StepKind):
        return raw_kind
    if raw_kind in REACT_FLOW_KIND_ALIASES:
        return REACT_FLOW_KIND_ALIASES[raw_kind]
    try:
        return StepKind(str(raw_kind).replace("-", "_"))
    except ValueError:
        raise InvalidTemplateError(f"Unknown step kind {raw_kind!r} on step {step_id!r}") from None


def _parse_react_flow(template_id: str, data: dict[str, Any]) -> FlowTemplate:
    steps = []
    for node in data.get("nodes") or []:
        node_id = str(node["id"])
        steps.append(Step(id=node_id, kind=_resolve_kind(node.get("type"), node_id), config=node.get("data") or {}))

    transitions = [
        Transition(
            source=str(edge["source"]),
            # Edges without a sourceHandle are plain "next" edges
            handle=edge.get("sourceHandle") or "next",
            target=str(edge["target"]),
        )
        for edge in data.get("edges") or []
    ]

    return FlowTemplate(
        id=template_id,
        name=data.get("name"),
        steps=steps,
        transitions=transitions,
        start_step_id=data.get("start_step_id"),
    )


def _parse_native(template_id: str, data: dict[str, Any]) -> FlowTemplate:
    steps = []
    for raw in data.get("steps") or []:
        step_id = str(raw["id"])
        steps.append(Step(id=step_id, kind=_resolve_kind(raw.get("kind"), step_id), config=raw.get("config") or {}))

    transitions = [
        Transition(source=str(raw["source"]), handle=raw.get("handle") or "next", target=str(raw["target"]))
        for raw in data.get("transitions") or []
    ]

    return FlowTemplate(
        id=template_id,
        name=data.get("name"),
        steps=steps,
        transitions=transitions,
        start_step_id=data.get("start_step_id"),
    )


def parse_template(template_id: str, data: dict[str, Any]) -> FlowTemplate:
    """Build a FlowTemplate from a native or react-flow document.

    Raises InvalidTemplateError on malformed input.
    """
    if not isinstance(data, dict):
        raise InvalidTemplateError(f"Template {template_id} must be a mapping")
    try:
        if "nodes" in data:
            return _parse_react_flow(template_id, data)
        return _parse_native(template_id, data)
    except KeyError as exc:
        raise InvalidTemplateError(f"Template {template_id} is missing field {exc}") from None


class TemplateRepository(ABC):
    @abstractmethod
    def get(self, template_id: str) -> FlowTemplate:
        """Return the template or raise TemplateNotFoundError."""


class InMemoryTemplateRepository(TemplateRepository):
    def __init__(self, templates: Optional[list[FlowTemplate]] = None):
        self._templates: dict[str, FlowTemplate] = {}
        for template in templates or []:
            self.add(template)

    def add(self, template: FlowTemplate) -> None:
        self._templates[template.id] = template

    def get(self, template_id: str) -> FlowTemplate:
        template = self._templates.get(template_id)
        if template is None:
            raise TemplateNotFoundError(template_id)
        return template


class FileTemplateRepository(TemplateRepository):
    """Loads ``<templates_dir>/<template_id>.{yaml,yml,json}`` on first use."""

    SUFFIXES = (".yaml", ".yml", ".json")

    def __init__(self, templates_dir: str):
        self.templates_dir = Path(templates_dir)
        self._cache: dict[str, FlowTemplate] = {}

    def _find_file(self, template_id: str) -> Optional[Path]:
        # Template ids are file stems; reject anything that walks out of the directory
        if not template_id or "/" in template_id or "\\" in template_id or template_id.startswith("."):
            return None
        for suffix in self.SUFFIXES:
            path = self.templates_dir / f"{template_id}{suffix}"
            if path.is_file():
                return path
        return None

    def get(self, template_id: str) -> FlowTemplate:
        if template_id in self._cache:
            return self._cache[template_id]

        path = self._find_file(template_id)
        if path is None:
            raise TemplateNotFoundError(template_id)

        try:
            with path.open(encoding="utf-8") as f:
                if path.suffix == ".json":
                    data = json.load(f)
                else:
                    data = yaml.safe_load(f)
        except (yaml.YAMLError, ValueError) as exc:
            logger.error(
                "Flow template is not valid YAML or JSON",
                extra={"context": {"template_id": template_id, "path": str(path), "error": str(exc)}},
            )
            raise InvalidTemplateError(f"Template {template_id} could not be parsed: {exc}") from exc

        template = parse_template(template_id, data)
        self._cache[template_id] = template
        logger.info(
            "Flow template loaded",
            extra={"context": {"template_id": template_id, "steps": len(template.steps), "path": str(path)}},
        )
        return template

    def reload(self) -> None:
        self._cache.clear()
