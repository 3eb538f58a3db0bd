"""Stage Catalog — the single source of truth for process stage order.

Process definitions are packaged JSON files (one per process type) under
``dealerflow/data/processes``; reordering stages or changing a Definition of
Done is a data change. Definitions are validated on load:

- stage ``order`` values are contiguous from 1, no gaps or duplicates
- stage ids are unique within the process
- at least two stages (first is the sole initial state, last the sole terminal)

The catalog is read-only after startup and needs no locking.
"""

import json
import logging
from datetime import timedelta
from pathlib import Path
from typing import Any

from dealerflow.core.exceptions import CatalogDefinitionError, UnknownProcessType, UnknownStage
from dealerflow.domain import ProcessDefinition, StageDefinition
from dealerflow.services.requirements import requirement_from_dict

logger = logging.getLogger(__name__)

# Directory where packaged JSON process files live.
DEFAULT_CATALOG_DIR = Path(__file__).parent.parent / "data" / "processes"


# ─── Loading ──────────────────────────────────────────────────────────────────


def stage_from_dict(data: dict[str, Any]) -> StageDefinition:
    try:
        return StageDefinition(
            stage_id=data["stage_id"],
            order=int(data["order"]),
            name=data.get("name", data["stage_id"]),
            assigned_role=data["assigned_role"],
            requirements=tuple(requirement_from_dict(r) for r in data.get("requirements", [])),
            estimated_duration=timedelta(hours=float(data.get("estimated_duration_hours", 0))),
            description=data.get("description", ""),
            blockers_gate_advancement=bool(data.get("blockers_gate_advancement", False)),
        )
    except KeyError as exc:
        raise CatalogDefinitionError(f"Stage definition is missing key {exc}") from exc


def process_from_dict(data: dict[str, Any]) -> ProcessDefinition:
    """Build and validate a process definition from its JSON form."""
    try:
        process_type = data["process_type"]
    except KeyError as exc:
        raise CatalogDefinitionError("Process definition is missing 'process_type'") from exc

    stages = sorted((stage_from_dict(s) for s in data.get("stages", [])), key=lambda s: s.order)
    process = ProcessDefinition(
        process_type=process_type,
        title=data.get("title", process_type),
        stages=tuple(stages),
        description=data.get("description", ""),
    )
    validate_process(process)
    return process


def validate_process(process: ProcessDefinition) -> None:
    """Raise CatalogDefinitionError when stage order invariants do not hold."""
    stages = process.stages
    if len(stages) < 2:
        raise CatalogDefinitionError(
            f"{process.process_type}: a process needs at least two stages, got {len(stages)}"
        )

    ids = [s.stage_id for s in stages]
    dupes = sorted({sid for sid in ids if ids.count(sid) > 1})
    if dupes:
        raise CatalogDefinitionError(f"{process.process_type}: duplicate stage ids {dupes}")

    orders = [s.order for s in stages]
    if orders != list(range(1, len(stages) + 1)):
        raise CatalogDefinitionError(
            f"{process.process_type}: stage order must run 1..{len(stages)} without gaps, got {orders}"
        )

    # Nothing ever advances out of the terminal stage, so a gate there is never checked
    terminal = stages[-1]
    if terminal.requirements or terminal.blockers_gate_advancement:
        raise CatalogDefinitionError(
            f"{process.process_type}: terminal stage '{terminal.stage_id}' cannot carry "
            f"requirements or gate on blockers; move them to '{stages[-2].stage_id}'"
        )


def load_process_file(path: Path) -> tuple[ProcessDefinition, list[str]]:
    """Load one process JSON file. Returns the definition and its validation aliases."""
    with open(path, encoding="utf-8") as fh:
        data = json.load(fh)
    return process_from_dict(data), list(data.get("validation_aliases", []))


# ─── Catalog ──────────────────────────────────────────────────────────────────


class StageCatalog:
    """Registry of process definitions keyed by process type."""

    def __init__(self, processes=()):
        self._processes: dict[str, ProcessDefinition] = {}
        self._aliases: dict[str, str] = {}
        for process in processes:
            self.register(process)

    @classmethod
    def from_directory(cls, directory=None) -> "StageCatalog":
        """Load every ``*.json`` process file in ``directory`` (sorted by name)."""
        path = Path(directory) if directory else DEFAULT_CATALOG_DIR
        catalog = cls()
        files = sorted(path.glob("*.json"))
        for file in files:
            process, aliases = load_process_file(file)
            catalog.register(process, aliases=aliases)
        logger.info("Stage catalog loaded: %d process type(s) from %s", len(files), path)
        return catalog

    def register(self, process: ProcessDefinition, aliases=()) -> None:
        validate_process(process)
        if process.process_type in self._processes:
            raise CatalogDefinitionError(f"Process type {process.process_type!r} registered twice")
        self._processes[process.process_type] = process
        for alias in aliases:
            self._aliases[alias] = process.process_type

    # ── Lookups ──────────────────────────────────────────────────────────

    def process_types(self) -> list[str]:
        return sorted(self._processes)

    def processes(self) -> list[ProcessDefinition]:
        return [self._processes[pt] for pt in self.process_types()]

    def get_process(self, process_type: str) -> ProcessDefinition:
        process = self._processes.get(process_type)
        if process is None:
            raise UnknownProcessType(process_type)
        return process

    def resolve_process_type(self, name: str) -> str:
        """Map a process type or a validation alias (e.g. ``po-to-warehouse``) to a process type."""
        if name in self._processes:
            return name
        if name in self._aliases:
            return self._aliases[name]
        raise UnknownProcessType(name)

    def stages_for(self, process_type: str) -> tuple[StageDefinition, ...]:
        return self.get_process(process_type).stages

    def get_stage(self, process_type: str, stage_id: str) -> StageDefinition:
        for stage in self.stages_for(process_type):
            if stage.stage_id == stage_id:
                return stage
        raise UnknownStage(process_type, stage_id)

    def first_stage(self, process_type: str) -> StageDefinition:
        return self.stages_for(process_type)[0]

    def terminal_stage(self, process_type: str) -> StageDefinition:
        return self.stages_for(process_type)[-1]

    def next_stage(self, process_type: str, stage_id: str) -> StageDefinition | None:
        """Immediate successor of ``stage_id``, or None at the terminal stage."""
        stage = self.get_stage(process_type, stage_id)
        stages = self.stages_for(process_type)
        if stage.order == len(stages):
            return None
        return stages[stage.order]

    def is_terminal(self, process_type: str, stage_id: str) -> bool:
        return self.get_stage(process_type, stage_id).order == len(self.stages_for(process_type))

    def remaining_stages(self, process_type: str, stage_id: str) -> tuple[StageDefinition, ...]:
        """Stages from ``stage_id`` (inclusive) to the terminal stage."""
        stage = self.get_stage(process_type, stage_id)
        return self.stages_for(process_type)[stage.order - 1:]
