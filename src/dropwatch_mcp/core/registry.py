from __future__ import annotations

import importlib
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import structlog
from pydantic import ValidationError

from .errors import ExporterConfigError, ExporterError
from .exporter_base import Exporter

log = structlog.get_logger(__name__)

# Exporter kind -> factory import path.
EXPORTER_IMPORTS: Dict[str, str] = {
    "console": "dropwatch_mcp.exporters.console.exporter:build_exporter",
    "pcap": "dropwatch_mcp.exporters.pcap.exporter:build_exporter",
    "telemetry": "dropwatch_mcp.exporters.telemetry.exporter:build_exporter",
}


@dataclass
class LoadedExporter:
    """
    Wrapper for a loaded exporter instance.
    """
    name: str
    instance: Exporter


def _import_factory(path: str):
    module_path, factory_name = path.split(":")
    module = importlib.import_module(module_path)
    return getattr(module, factory_name)


class ExporterRegistry:
    """
    Holds constructed exporter instances.

    Important:
      The router never imports exporter modules directly.
      This registry loads them based on import strings.

    Import string format:
      "some.module.path:factory_function"

    Example:
      "dropwatch_mcp.exporters.pcap.exporter:build_exporter"

    Section names are exporter kinds. A section may instead say "kind" to
    run a second exporter of a known kind under its own name, or "import"
    to plug in an out of tree factory.
    """

    def __init__(self, imports: Optional[Dict[str, str]] = None):
        self._imports = dict(EXPORTER_IMPORTS if imports is None else imports)
        self._exporters: Dict[str, LoadedExporter] = {}

    def register(self, exporter: Exporter) -> None:
        if exporter.name in self._exporters:
            raise ValueError(f"duplicate exporter name {exporter.name}")
        self._exporters[exporter.name] = LoadedExporter(name=exporter.name, instance=exporter)

    def get(self, name: str) -> Exporter:
        if name not in self._exporters:
            raise KeyError(f"exporter not loaded {name}")
        return self._exporters[name].instance

    def list(self) -> List[str]:
        return sorted(self._exporters.keys())

    def instances(self) -> List[Exporter]:
        return [self._exporters[name].instance for name in self.list()]

    def build(self, kind: str, section: Dict[str, Any]) -> Exporter:
        section = dict(section or {})
        path = section.pop("import", None) or self._imports.get(section.pop("kind", kind))
        if not path:
            raise ExporterConfigError(kind, "unknown exporter kind")

        try:
            factory = _import_factory(path)
        except (ImportError, AttributeError, ValueError) as e:
            raise ExporterConfigError(kind, f"cannot load factory {path}: {e}") from e

        try:
            exporter = factory(section)
        except ValidationError as e:
            raise ExporterConfigError(kind, str(e)) from e

        if exporter.name != kind:
            exporter.name = kind
        return exporter

    def load_from_config(self, sections: Dict[str, Dict[str, Any]]) -> List[ExporterError]:
        """
        Build and register one exporter per section.

        A broken section is logged and skipped, the rest still load.
        Returns the errors of the skipped sections.
        """
        errors: List[ExporterError] = []

        for kind, section in sections.items():
            try:
                self.register(self.build(kind, section))
            except ExporterError as e:
                log.error("exporter_config_invalid", exporter=kind, error=str(e))
                errors.append(e)
            except ValueError as e:
                log.error("exporter_register_failed", exporter=kind, error=str(e))
                errors.append(ExporterConfigError(kind, str(e)))

        return errors
