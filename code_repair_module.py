"""
Code Repair Module
==================

Analyzes generated files for problems and asks the backend for fixed
versions. Python and JSON sources get a local syntax check first; a critical
syntax error is reported without spending a backend call on analysis.
"""

from __future__ import annotations

import copy
import difflib
import json
import logging
import os
from typing import Any

from errors import Cancelled, MalformedOutput, PipelineError, Timeout, classify_error
from events import OperationCompleted, OperationFailed, OperationStarted
from facade import ModuleFacade, OperationResult
from models import DecodeTarget, Phase, TaskStatus, utc_iso
from stream_decoder import strip_code_fences

logger = logging.getLogger(__name__)

SKIPPED_SUFFIXES = {".png", ".jpg", ".jpeg", ".gif", ".svg", ".ico", ".woff", ".woff2", ".ttf", ".eot"}
SKIPPED_NAMES = {"package-lock.json", "yarn.lock", "pnpm-lock.yaml", "poetry.lock"}
SKIPPED_DIRS = ("build/", "dist/", "node_modules/", ".next/")
BRACKET_CHECKED_SUFFIXES = {".js", ".jsx", ".ts", ".tsx", ".mjs", ".cjs"}


def should_analyze(path: str) -> bool:
    normalized = path.replace("\\", "/")
    name = normalized.rsplit("/", 1)[-1]
    if os.path.splitext(name)[1].lower() in SKIPPED_SUFFIXES:
        return False
    if name in SKIPPED_NAMES:
        return False
    return not normalized.startswith(SKIPPED_DIRS)


def _syntax_issue(location: str, description: str, fix: str) -> dict[str, Any]:
    return {
        "type": "syntax",
        "location": location,
        "description": description,
        "severity": "critical",
        "fix": fix,
        "source": "local",
    }


def check_syntax(path: str, content: str) -> list[dict[str, Any]]:
    """Cheap local checks: Python compile, JSON parse, bracket balance for JS/TS."""
    suffix = os.path.splitext(path)[1].lower()
    if suffix == ".py":
        try:
            compile(content, path, "exec")
        except SyntaxError as exc:
            return [
                _syntax_issue(
                    f"line {exc.lineno}" if exc.lineno else "general",
                    f"Python syntax error: {exc.msg}",
                    "Correct the statement at the reported line",
                )
            ]
        return []
    if suffix == ".json":
        try:
            json.loads(content)
        except json.JSONDecodeError as exc:
            return [
                _syntax_issue(
                    f"line {exc.lineno}",
                    f"Invalid JSON: {exc.msg}",
                    "Make the file a single valid JSON document",
                )
            ]
        return []
    if suffix in BRACKET_CHECKED_SUFFIXES:
        issues = []
        for opening, closing, label in (("{", "}", "curly braces"), ("(", ")", "parentheses")):
            opened, closed = content.count(opening), content.count(closing)
            if opened != closed:
                issues.append(
                    _syntax_issue(
                        "general",
                        f"Mismatched {label}: {opened} opening vs {closed} closing",
                        f"Check and fix mismatched {label} in the file",
                    )
                )
        return issues
    return []


def _normalize_issue_list(issues: Any) -> list[dict[str, Any]]:
    if isinstance(issues, dict):
        issues = issues.get("issues")
    if not isinstance(issues, list):
        return []
    return [issue for issue in issues if isinstance(issue, dict)]


def normalize_analysis(result: Any) -> dict[str, Any]:
    if not isinstance(result, dict) or not isinstance(result.get("issues"), list):
        raise MalformedOutput("Analysis result must contain an 'issues' list")
    return {
        "issues": _normalize_issue_list(result),
        "missingDependencies": [
            dep for dep in result.get("missingDependencies") or [] if isinstance(dep, str) and dep
        ],
        "overallAssessment": str(result.get("overallAssessment") or ""),
    }


def _clean_fixed_code(content: Any) -> str:
    if not isinstance(content, str):
        raise MalformedOutput("Fixed code was not text")
    cleaned = strip_code_fences(content.strip()).strip()
    if not cleaned:
        raise MalformedOutput("Fixed code is empty")
    return cleaned + "\n"


class CodeRepairModule(ModuleFacade):
    module_name = "repair"
    phase = Phase.TESTING

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.files: dict[str, str] = {}
        self.issues: dict[str, dict[str, Any]] = {}
        self.fixes: dict[str, dict[str, Any]] = {}
        self.missing_dependencies: set[str] = set()
        self.report: dict[str, Any] | None = None

    async def analyze_file(
        self,
        path: str,
        content: str,
        *,
        bypass_cache: bool = False,
        streaming: bool | None = None,
    ) -> OperationResult:
        self._log(logging.INFO, "Analyzing file: %s", path)
        syntax_issues = check_syntax(path, content)
        if any(issue["severity"] == "critical" for issue in syntax_issues):
            analysis = {
                "issues": syntax_issues,
                "missingDependencies": [],
                "overallAssessment": "Critical syntax errors found",
            }
            value = self._merge_analysis(path, content, analysis, [])
            self.bus.publish(
                OperationCompleted(operation="analysis", module=self.module_name, result=value)
            )
            return OperationResult(operation="analysis", value=value)

        request = self.build_request(
            "analyze",
            f"File Path: {path}\n\nCODE:\n{content}",
            streaming=streaming,
        )
        return await self._generate(
            "analysis",
            request,
            target=DecodeTarget.JSON,
            readiness_key="issues",
            finalize=normalize_analysis,
            merge=lambda analysis: self._merge_analysis(path, content, analysis, syntax_issues),
            bypass_cache=bypass_cache,
            details={"path": path},
        )

    def _merge_analysis(
        self,
        path: str,
        content: str,
        analysis: dict[str, Any],
        syntax_issues: list[dict[str, Any]],
    ) -> dict[str, Any]:
        merged = {**analysis, "issues": [*syntax_issues, *analysis["issues"]]}
        self.files.setdefault(path, content)
        self.issues[path] = merged
        self.missing_dependencies.update(merged.get("missingDependencies", []))
        return {"path": path, **copy.deepcopy(merged)}

    async def fix_file(
        self,
        path: str,
        content: str,
        issues: Any,
        *,
        bypass_cache: bool = False,
        streaming: bool | None = None,
    ) -> OperationResult:
        """Fix one file. With no issues there is nothing to do and no backend call."""
        issue_list = _normalize_issue_list(issues)
        if not issue_list:
            return OperationResult(
                operation="fix",
                value={"path": path, "fixed": False, "content": content, "diff": "", "issuesFixed": 0},
            )

        self._log(logging.INFO, "Fixing %d issues in %s", len(issue_list), path)
        request = self.build_request(
            "fix",
            (
                f"File Path: {path}\n\nORIGINAL CODE:\n{content}\n\n"
                f"DETECTED ISSUES:\n{json.dumps(issue_list, indent=2, sort_keys=True)}"
            ),
            streaming=streaming,
        )
        return await self._generate(
            "fix",
            request,
            target=DecodeTarget.FENCED_CODE,
            finalize=_clean_fixed_code,
            merge=lambda fixed: self._merge_fix(path, content, fixed, issue_list),
            bypass_cache=bypass_cache,
            details={"path": path, "issue_count": len(issue_list)},
        )

    def _merge_fix(
        self,
        path: str,
        original: str,
        fixed: str,
        issues: list[dict[str, Any]],
    ) -> dict[str, Any]:
        diff = "".join(
            difflib.unified_diff(
                original.splitlines(keepends=True),
                fixed.splitlines(keepends=True),
                fromfile=f"a/{path}",
                tofile=f"b/{path}",
            )
        )
        changed = fixed != original
        if changed:
            self.files[path] = fixed
            self.fixes[path] = {"issues": copy.deepcopy(issues), "diff": diff, "fixedAt": utc_iso()}
        return {
            "path": path,
            "fixed": changed,
            "content": fixed,
            "diff": diff,
            "issuesFixed": len(issues) if changed else 0,
        }

    async def repair_project(
        self,
        files: dict[str, str],
        *,
        bypass_cache: bool = False,
        streaming: bool | None = None,
    ) -> dict[str, Any]:
        """Analyze every analyzable file, fix those with issues, and return a report.

        A failure on one file is recorded in the report and does not stop the
        others; cancellation stops the whole run.
        """
        project_task = self.registry.begin_task(
            "project_repair",
            timeout=self.config.phase_timeout(Phase.TESTING.value),
            throttled=False,
        )
        self.bus.publish(
            OperationStarted(
                correlation_id=project_task,
                operation="repair",
                module=self.module_name,
                details={"file_count": len(files)},
            )
        )
        targets = [path for path in files if should_analyze(path)]
        details: list[dict[str, Any]] = []
        summary = {"filesAnalyzed": 0, "issuesFound": 0, "filesFixed": 0, "skipped": len(files) - len(targets)}

        try:
            for index, path in enumerate(targets, 1):
                self._check_project_task(project_task)
                entry: dict[str, Any] = {"file": path}
                details.append(entry)
                try:
                    analysis = (
                        await self.analyze_file(
                            path, files[path], bypass_cache=bypass_cache, streaming=streaming
                        )
                    ).value
                    summary["filesAnalyzed"] += 1
                    summary["issuesFound"] += len(analysis["issues"])
                    entry["issueCount"] = len(analysis["issues"])
                    if analysis["issues"]:
                        fix = (
                            await self.fix_file(
                                path,
                                files[path],
                                analysis["issues"],
                                bypass_cache=bypass_cache,
                                streaming=streaming,
                            )
                        ).value
                        entry["fixed"] = fix["fixed"]
                        if fix["fixed"]:
                            summary["filesFixed"] += 1
                except Cancelled:
                    raise
                except PipelineError as exc:
                    entry["error"] = exc.to_dict()
                    self._log(logging.ERROR, "Repair of %s failed: %s", path, exc.message)
                self.registry.update_progress(project_task, round(index * 100 / len(targets)))
        except Exception as exc:
            error = classify_error(exc, phase=self.phase_name, operation="repair")
            self.registry.fail_task(project_task, error)
            self.bus.publish(
                OperationFailed(
                    correlation_id=project_task,
                    operation="repair",
                    module=self.module_name,
                    kind=error.kind,
                    message=error.message,
                    phase=self.phase_name,
                )
            )
            raise error

        self.report = {
            "summary": summary,
            "details": details,
            "fixes": [
                {"file": path, "issuesFixed": len(fix["issues"])} for path, fix in self.fixes.items()
            ],
            "dependencies": {"missing": sorted(self.missing_dependencies)},
            "completedAt": utc_iso(),
        }
        self.registry.complete_task(project_task, self.report)
        self.bus.publish(
            OperationCompleted(
                correlation_id=project_task,
                operation="repair",
                module=self.module_name,
                result=summary,
            )
        )
        self._log(
            logging.INFO,
            "Repair complete: %d analyzed, %d issues, %d fixed",
            summary["filesAnalyzed"],
            summary["issuesFound"],
            summary["filesFixed"],
        )
        return copy.deepcopy(self.report)

    def _check_project_task(self, task_id: str) -> None:
        task = self.registry.get(task_id)
        if task is None or task.status is TaskStatus.IN_PROGRESS:
            return
        if task.status is TaskStatus.TIMEOUT:
            raise Timeout("Project repair exceeded its deadline", operation="repair")
        raise Cancelled("Project repair was cancelled", operation="repair")

    async def run(self, files: dict[str, str], **options: Any) -> dict[str, Any]:
        return await self.repair_project(files, **options)

    def snapshot(self) -> dict[str, Any]:
        return {
            "files": dict(self.files),
            "issues": copy.deepcopy(self.issues),
            "fixes": copy.deepcopy(self.fixes),
            "missingDependencies": sorted(self.missing_dependencies),
            "report": copy.deepcopy(self.report),
        }

    def restore(self, data: dict[str, Any]) -> None:
        self.files = dict(data.get("files") or {})
        self.issues = copy.deepcopy(data.get("issues") or {})
        self.fixes = copy.deepcopy(data.get("fixes") or {})
        self.missing_dependencies = set(data.get("missingDependencies") or [])
        self.report = copy.deepcopy(data.get("report"))
