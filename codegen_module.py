"""
Code Generation Module
======================

Plans a project file layout from requirements and design, then generates
each file as a fenced code block. Generated files are kept in memory as a
path -> content map; writing them to disk is left to the caller.
"""

from __future__ import annotations

import copy
import json
import logging
from typing import Any

from errors import Cancelled, MalformedOutput, Timeout, classify_error
from events import OperationCompleted, OperationFailed, OperationStarted, StreamUpdated
from facade import ModuleFacade, OperationResult
from models import DecodeTarget, FileKind, Phase, TaskStatus, classify_file, utc_iso

logger = logging.getLogger(__name__)


def _requirements_brief(requirements: Any) -> str:
    """Render requirements as stable text (ids and statements only)."""
    if isinstance(requirements, dict) and "requirements" in requirements:
        requirements = requirements["requirements"]
    items: list[dict[str, Any]] = []
    if isinstance(requirements, dict):
        for values in requirements.values():
            if isinstance(values, list):
                items.extend(value for value in values if isinstance(value, dict))
    elif isinstance(requirements, list):
        items = [value for value in requirements if isinstance(value, dict)]
    elif isinstance(requirements, str):
        return requirements
    return "\n".join(
        f"{item.get('id', '-')}: {item.get('statement', '')}".strip() for item in items
    )


def _normalize_dependencies(value: Any) -> dict[str, str]:
    if isinstance(value, dict):
        return {str(name): str(version or "latest") for name, version in value.items()}
    if isinstance(value, list):
        return {str(name): "latest" for name in value if isinstance(name, str) and name}
    return {}


def normalize_structure(result: Any) -> dict[str, Any]:
    """Validate a decoded structure and tag every file with its FileKind."""
    if not isinstance(result, dict):
        raise MalformedOutput("Project structure was not an object")
    raw_files = result.get("files")
    if not isinstance(raw_files, list):
        raise MalformedOutput("'files' must be a list")

    files: list[dict[str, Any]] = []
    seen: set[str] = set()
    for entry in raw_files:
        if isinstance(entry, str):
            entry = {"path": entry}
        if not isinstance(entry, dict):
            continue
        path = str(entry.get("path") or "").strip().removeprefix("./")
        if not path or path in seen:
            continue
        seen.add(path)
        files.append(
            {
                **entry,
                "path": path,
                "purpose": str(entry.get("purpose") or ""),
                "kind": classify_file(path).value,
            }
        )
    if not files:
        raise MalformedOutput("Project structure lists no files")

    return {
        "files": files,
        "dependencies": _normalize_dependencies(result.get("dependencies")),
        "devDependencies": _normalize_dependencies(result.get("devDependencies")),
        "entryPoints": [p for p in result.get("entryPoints") or [] if isinstance(p, str)],
    }


def _require_code(content: Any) -> str:
    if not isinstance(content, str) or not content.strip():
        raise MalformedOutput("Generated file is empty")
    return content


class CodeGenerationModule(ModuleFacade):
    module_name = "codegen"
    phase = Phase.CODEGEN

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.structure: dict[str, Any] | None = None
        self.files: dict[str, dict[str, str]] = {}
        self.metadata: dict[str, Any] = {
            "status": "idle",
            "fileCount": 0,
            "updatedAt": utc_iso(),
            "generatedAt": None,
            "lastError": None,
        }

    # ------------------------------------------------------------------
    # Structure
    # ------------------------------------------------------------------

    async def generate_structure(
        self,
        requirements: Any,
        design: Any = None,
        *,
        bypass_cache: bool = False,
        streaming: bool | None = None,
    ) -> OperationResult:
        self._log(logging.INFO, "Generating project structure")
        prompt = (
            f"Requirements:\n{_requirements_brief(requirements)}\n\n"
            f"Design:\n{json.dumps(design or {}, sort_keys=True, ensure_ascii=False)}"
        )
        request = self.build_request("structure", prompt, streaming=streaming)
        return await self._generate(
            "structure",
            request,
            target=DecodeTarget.JSON,
            readiness_key="files",
            finalize=normalize_structure,
            merge=self._merge_structure,
            bypass_cache=bypass_cache,
        )

    def _merge_structure(self, structure: dict[str, Any]) -> dict[str, Any]:
        self.structure = copy.deepcopy(structure)
        self.metadata["status"] = "structure_generated"
        self.metadata["updatedAt"] = utc_iso()
        return copy.deepcopy(structure)

    def file_kind(self, path: str) -> FileKind:
        """Kind recorded when the structure was decoded; classified now only for unplanned files."""
        for entry in (self.structure or {}).get("files", []):
            if entry["path"] == path:
                return FileKind(entry["kind"])
        return classify_file(path)

    # ------------------------------------------------------------------
    # Files
    # ------------------------------------------------------------------

    async def generate_file(
        self,
        path: str,
        info: dict[str, Any] | None,
        requirements: Any,
        *,
        bypass_cache: bool = False,
        streaming: bool | None = None,
    ) -> OperationResult:
        info = info or {}
        kind = self.file_kind(path)
        self._log(logging.INFO, "Generating file: %s", path)
        prompt = (
            f"Generate production-ready code for {path}\n"
            f"Kind: {kind.value}\n"
            f"Purpose: {info.get('purpose', '')}\n"
            f"Requirements:\n{_requirements_brief(requirements)}"
        )
        request = self.build_request("file", prompt, streaming=streaming)
        return await self._generate(
            "file",
            request,
            target=DecodeTarget.FENCED_CODE,
            finalize=_require_code,
            merge=lambda content: self._merge_file(path, kind, content, replace=bypass_cache),
            bypass_cache=bypass_cache,
            details={"path": path, "kind": kind.value},
        )

    def _merge_file(self, path: str, kind: FileKind, content: str, *, replace: bool) -> dict[str, str]:
        # First write wins unless the caller asked for a fresh generation.
        if path not in self.files or replace:
            self.files[path] = {"content": content, "kind": kind.value}
            self.metadata["fileCount"] = len(self.files)
            self.metadata["updatedAt"] = utc_iso()
        return {"path": path, **self.files[path]}

    # ------------------------------------------------------------------
    # Project
    # ------------------------------------------------------------------

    async def generate_project(
        self,
        requirements: Any,
        design: Any = None,
        *,
        bypass_cache: bool = False,
        streaming: bool | None = None,
    ) -> dict[str, Any]:
        """Generate the structure (if absent) and then every planned file in order."""
        project_task = self.registry.begin_task(
            "project_generation",
            timeout=self.config.phase_timeout(Phase.CODEGEN.value),
            throttled=False,
        )
        self.bus.publish(
            OperationStarted(correlation_id=project_task, operation="project", module=self.module_name)
        )
        self._log(logging.INFO, "Starting project generation")
        try:
            if self.structure is None or bypass_cache:
                await self.generate_structure(
                    requirements, design, bypass_cache=bypass_cache, streaming=streaming
                )
            if self.structure is None:
                raise MalformedOutput("Project structure was not produced", operation="project")
            planned = self.structure["files"]
            for index, info in enumerate(planned, 1):
                self._check_project_task(project_task)
                await self.generate_file(
                    info["path"], info, requirements, bypass_cache=bypass_cache, streaming=streaming
                )
                self._check_project_task(project_task)
                progress = round(index * 100 / len(planned))
                self.registry.update_progress(project_task, progress)
                self.bus.publish(
                    StreamUpdated(
                        correlation_id=project_task,
                        stream_id=project_task,
                        operation="project",
                        progress=progress,
                        snapshot={
                            "filesGenerated": index,
                            "totalFiles": len(planned),
                            "currentFile": info["path"],
                        },
                    )
                )
        except Exception as exc:
            error = classify_error(exc, phase=self.phase_name, operation="project")
            self.metadata["lastError"] = {**error.to_dict(), "timestamp": utc_iso()}
            self.registry.fail_task(project_task, error)
            self._log(logging.ERROR, "Project generation failed: %s", error.message)
            self.bus.publish(
                OperationFailed(
                    correlation_id=project_task,
                    operation="project",
                    module=self.module_name,
                    kind=error.kind,
                    message=error.message,
                    phase=self.phase_name,
                )
            )
            raise error

        self.metadata["status"] = "project_generated"
        self.metadata["generatedAt"] = utc_iso()
        outcome = {"filesGenerated": len(planned), "manifest": self.manifest()}
        self.registry.complete_task(project_task, outcome)
        self.bus.publish(
            OperationCompleted(
                correlation_id=project_task,
                operation="project",
                module=self.module_name,
                result=outcome,
            )
        )
        self._log(logging.INFO, "Project generation completed (%d files)", len(planned))
        return outcome

    def _check_project_task(self, task_id: str) -> None:
        task = self.registry.get(task_id)
        if task is None or task.status is TaskStatus.IN_PROGRESS:
            return
        if task.status is TaskStatus.TIMEOUT:
            raise Timeout("Project generation exceeded its deadline", operation="project")
        raise Cancelled("Project generation was cancelled", operation="project")

    async def run(self, requirements: Any, *, design: Any = None, **options: Any) -> dict[str, Any]:
        return await self.generate_project(requirements, design, **options)

    # ------------------------------------------------------------------
    # Export
    # ------------------------------------------------------------------

    def manifest(self) -> dict[str, Any]:
        structure = self.structure or {}
        return {
            "framework": self.config.framework,
            "files": list(self.files),
            "fileKinds": {path: entry["kind"] for path, entry in self.files.items()},
            "dependencies": dict(structure.get("dependencies", {})),
            "devDependencies": dict(structure.get("devDependencies", {})),
            "generatedAt": self.metadata["generatedAt"],
        }

    def file_map(self) -> dict[str, str]:
        return {path: entry["content"] for path, entry in self.files.items()}

    def snapshot(self) -> dict[str, Any]:
        return {
            "structure": copy.deepcopy(self.structure),
            "files": copy.deepcopy(self.files),
            "metadata": copy.deepcopy(self.metadata),
        }

    def restore(self, data: dict[str, Any]) -> None:
        self.structure = copy.deepcopy(data.get("structure"))
        self.files = {
            path: {"content": entry["content"], "kind": entry.get("kind") or classify_file(path).value}
            for path, entry in (data.get("files") or {}).items()
            if isinstance(entry, dict) and isinstance(entry.get("content"), str)
        }
        self.metadata.update(data.get("metadata") or {})
        self.metadata["fileCount"] = len(self.files)
