"""
FileFlowStore — flows exported from the editor, loaded from a directory.

Data layout:
  {flows_dir}/
    reservation.json
    feedback.yaml
    ...

Each file holds one flow export (id, name, status, triggers, nodes, edges,
metadata, tenant_id). Invalid graphs are logged and skipped so one broken
export never takes the other flows down.
"""
from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import structlog
import yaml

from database.store_memory import InMemoryFlowStore
from flows.loader import FlowValidationError, load_flow

logger = structlog.get_logger()

_SUFFIXES = (".json", ".yaml", ".yml")


class FileFlowStore(InMemoryFlowStore):
    """Extends InMemoryFlowStore by reading flow exports from disk on init."""

    def __init__(self, flows_dir: str = "./data/flows", default_tenant_id: str = ""):
        super().__init__()
        self._flows_dir = Path(flows_dir)
        self._default_tenant_id = default_tenant_id
        self.invalid: dict[str, list[str]] = {}       # file name → validation errors
        self.reload()

    def _read(self, path: Path) -> Any:
        with open(path, "r", encoding="utf-8") as f:
            if path.suffix == ".json":
                return json.load(f)
            return yaml.safe_load(f)

    def reload(self) -> int:
        """(Re)load every flow file; returns the number of flows loaded."""
        self._flows.clear()
        self.invalid.clear()
        if not self._flows_dir.exists():
            logger.warning("flows_dir_missing", flows_dir=str(self._flows_dir))
            return 0

        for path in sorted(self._flows_dir.iterdir()):
            if path.suffix not in _SUFFIXES:
                continue
            try:
                raw = self._read(path)
                if not isinstance(raw, dict):
                    raise FlowValidationError(path.stem, ["flow file must contain a single object"])
                flow = load_flow(raw, tenant_id=self._default_tenant_id)
            except FlowValidationError as e:
                self.invalid[path.name] = e.errors
                logger.error("flow_invalid", file=path.name, flow_id=e.flow_id, errors=e.errors)
                continue
            except (OSError, json.JSONDecodeError, yaml.YAMLError) as e:
                self.invalid[path.name] = [str(e)]
                logger.error("flow_file_unreadable", file=path.name, error=str(e))
                continue
            self.add(flow)

        logger.info("file_flow_store_loaded", flows_dir=str(self._flows_dir),
                    flows=len(self._flows), invalid=len(self.invalid))
        return len(self._flows)
