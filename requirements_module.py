"""
Requirements Module
===================

Owns the categorized requirements of one project: functional (FR-n),
non-functional (NFR-n), user stories (US-n) and constraints (CON-n), plus
validation results and PlantUML diagrams.

Usage:
    module = RequirementsModule(backend, bus=bus, registry=registry, cache=cache)
    outcome = await module.extract_requirements("Build a login form")
    print(outcome.value["functional"][0]["id"])   # FR-1
"""

from __future__ import annotations

import copy
import json
import logging
import re
from typing import Any

from errors import MalformedOutput
from facade import ModuleFacade, OperationResult
from models import DecodeTarget, Phase, utc_iso
from stream_decoder import extract_uml_code

logger = logging.getLogger(__name__)

# category key -> (id prefix, category label stored on each item)
CATEGORIES: dict[str, tuple[str, str]] = {
    "functional": ("FR", "functional"),
    "nonFunctional": ("NFR", "nonFunctional"),
    "userStories": ("US", "userStory"),
    "constraints": ("CON", "constraint"),
}

FIXABLE_ISSUE_TYPES = {"clarity", "specificity"}


def _empty_requirements() -> dict[str, list[dict[str, Any]]]:
    return {key: [] for key in CATEGORIES}


def _coerce_item(item: Any) -> dict[str, Any] | None:
    if isinstance(item, str):
        item = {"statement": item}
    if not isinstance(item, dict):
        return None
    statement = item.get("statement") or item.get("description") or ""
    statement = str(statement).strip()
    if not statement:
        return None
    return {**item, "statement": statement}


def _id_number(prefix: str, value: Any) -> int | None:
    if not isinstance(value, str):
        return None
    match = re.fullmatch(rf"{prefix}-(\d+)", value.strip())
    return int(match.group(1)) if match else None


def normalize_extraction(result: Any) -> dict[str, list[dict[str, Any]]]:
    """Coerce a decoded extraction into four lists of statement-bearing dicts."""
    if not isinstance(result, dict):
        raise MalformedOutput("Extraction result was not an object")
    normalized = _empty_requirements()
    for key in CATEGORIES:
        raw_items = result.get(key) or []
        if not isinstance(raw_items, list):
            raise MalformedOutput(f"'{key}' must be a list")
        normalized[key] = [item for item in map(_coerce_item, raw_items) if item is not None]
    return normalized


class RequirementsModule(ModuleFacade):
    module_name = "requirements"
    phase = Phase.REQUIREMENTS

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.requirements = _empty_requirements()
        self.diagrams: dict[str, str] = {}
        self.metadata: dict[str, Any] = {
            "createdAt": utc_iso(),
            "updatedAt": utc_iso(),
            "version": 1,
            "status": "draft",
        }
        self.counters = {key: 0 for key in CATEGORIES}

    # ------------------------------------------------------------------
    # Domain state
    # ------------------------------------------------------------------

    def _touch(self) -> None:
        self.metadata["updatedAt"] = utc_iso()

    def _merge_items(self, key: str, items: list[dict[str, Any]]) -> list[dict[str, Any]]:
        """
        Add items to a category. Items whose id or statement is already
        present are skipped, so re-delivering a result changes nothing.
        Missing or malformed ids get the next free number.
        """
        prefix, label = CATEGORIES[key]
        existing = self.requirements[key]
        seen_statements = {item["statement"].casefold() for item in existing}
        taken_ids = {item["id"] for item in existing}
        added: list[dict[str, Any]] = []

        for raw in items:
            item = _coerce_item(raw)
            if item is None or item["statement"].casefold() in seen_statements:
                continue
            number = _id_number(prefix, item.get("id"))
            if number is None:
                self.counters[key] += 1
                number = self.counters[key]
            elif f"{prefix}-{number}" in taken_ids:
                logger.debug("Ignoring %s: id already present", item["id"])
                continue
            else:
                self.counters[key] = max(self.counters[key], number)
            record = {
                **item,
                "id": f"{prefix}-{number}",
                "status": item.get("status") or "proposed",
                "category": label,
                "createdAt": item.get("createdAt") or utc_iso(),
            }
            existing.append(record)
            taken_ids.add(record["id"])
            seen_statements.add(record["statement"].casefold())
            added.append(record)

        if added:
            self._touch()
        return added

    def _merge_extraction(self, result: dict[str, list[dict[str, Any]]]) -> dict[str, Any]:
        added = 0
        for key in CATEGORIES:
            added += len(self._merge_items(key, result.get(key, [])))
        if added:
            self._log(logging.INFO, "Merged %d new requirements (%d total)", added, self.total_count())
        return self.categorized()

    def categorized(self) -> dict[str, list[dict[str, Any]]]:
        return copy.deepcopy(self.requirements)

    def find_requirement(self, requirement_id: str) -> dict[str, Any] | None:
        for items in self.requirements.values():
            for item in items:
                if item["id"] == requirement_id:
                    return item
        return None

    def total_count(self) -> int:
        return sum(len(items) for items in self.requirements.values())

    def recompute_counters(self) -> None:
        for key, (prefix, _) in CATEGORIES.items():
            numbers = [_id_number(prefix, item.get("id")) for item in self.requirements[key]]
            self.counters[key] = max((n for n in numbers if n is not None), default=0)

    def _requirements_digest(self, keys: tuple[str, ...] = tuple(CATEGORIES)) -> str:
        rows = [
            {
                "id": item["id"],
                "category": item["category"],
                "statement": item["statement"],
                "priority": item.get("priority"),
            }
            for key in keys
            for item in self.requirements[key]
        ]
        return json.dumps(rows, indent=2, ensure_ascii=False)

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def extract_requirements(
        self,
        text: str,
        *,
        bypass_cache: bool = False,
        streaming: bool | None = None,
    ) -> OperationResult:
        if not text or not text.strip():
            raise ValueError("User input cannot be empty for requirements extraction")
        self._log(logging.INFO, "Extracting requirements from input (%d chars)", len(text))
        request = self.build_request(
            "extraction",
            f"Here is the user's input to analyze:\n\n{text.strip()}",
            streaming=streaming,
        )
        return await self._generate(
            "extraction",
            request,
            target=DecodeTarget.JSON,
            readiness_key="functional",
            finalize=normalize_extraction,
            merge=self._merge_extraction,
            bypass_cache=bypass_cache,
            details={"input_length": len(text)},
        )

    async def validate_requirements(
        self,
        *,
        apply_fixes: bool = False,
        bypass_cache: bool = False,
        streaming: bool | None = None,
    ) -> OperationResult:
        if self.total_count() == 0:
            raise ValueError("No requirements to validate")
        request = self.build_request(
            "validation",
            f"Requirements to validate:\n\n{self._requirements_digest()}",
            streaming=streaming,
        )
        return await self._generate(
            "validation",
            request,
            target=DecodeTarget.JSON,
            readiness_key="validationResults",
            finalize=_normalize_validation,
            merge=lambda result: self._merge_validation(result, apply_fixes),
            bypass_cache=bypass_cache,
            details={"requirement_count": self.total_count(), "apply_fixes": apply_fixes},
        )

    def _merge_validation(self, results: dict[str, Any], apply_fixes: bool) -> dict[str, Any]:
        self.metadata["validation"] = copy.deepcopy(results)
        self.metadata["validatedAt"] = utc_iso()
        self.metadata["status"] = "validated" if results.get("status") == "valid" else "reviewed"
        if apply_fixes:
            self.apply_validation_fixes(results.get("issues", []))
        self._touch()
        return copy.deepcopy(results)

    def apply_validation_fixes(self, issues: list[dict[str, Any]]) -> int:
        """Rewrite statements for clarity/specificity issues. Returns the number applied."""
        applied = 0
        for issue in issues:
            requirement_id = issue.get("requirementId")
            suggestion = issue.get("suggestion")
            if not requirement_id or not suggestion:
                continue
            requirement = self.find_requirement(requirement_id)
            if requirement is None:
                continue
            if issue.get("issueType") not in FIXABLE_ISSUE_TYPES:
                requirement["reviewed"] = True
                continue
            if requirement["statement"] == suggestion:
                continue
            requirement.setdefault("revisions", []).append(
                {
                    "timestamp": utc_iso(),
                    "issueType": issue.get("issueType"),
                    "previousStatement": requirement["statement"],
                    "change": "Applied validation fix",
                }
            )
            requirement["statement"] = suggestion
            requirement["reviewed"] = True
            requirement["reviewedAt"] = utc_iso()
            applied += 1
        if applied:
            self._log(logging.INFO, "Applied %d validation fixes", applied)
        return applied

    async def generate_diagrams(
        self,
        *,
        bypass_cache: bool = False,
        streaming: bool | None = None,
    ) -> OperationResult:
        if self.total_count() == 0:
            raise ValueError("No requirements to model")
        request = self.build_request(
            "diagrams",
            f"Requirements to model with UML:\n\n{self._requirements_digest()}",
            streaming=streaming,
        )
        return await self._generate(
            "uml",
            request,
            target=DecodeTarget.JSON,
            readiness_key="diagrams",
            finalize=_normalize_diagrams,
            merge=self._merge_diagrams,
            bypass_cache=bypass_cache,
            task_timeout=self.config.phase_timeout(Phase.DESIGN.value),
        )

    def _merge_diagrams(self, diagrams: dict[str, str]) -> dict[str, str]:
        self.diagrams.update(diagrams)
        self._touch()
        return dict(self.diagrams)

    async def generate_user_stories(
        self,
        *,
        bypass_cache: bool = False,
        streaming: bool | None = None,
    ) -> OperationResult:
        if not self.requirements["functional"]:
            raise ValueError("No functional requirements to derive user stories from")
        request = self.build_request(
            "user_stories",
            f"Functional Requirements:\n\n{self._requirements_digest(('functional',))}",
            streaming=streaming,
        )
        return await self._generate(
            "stories",
            request,
            target=DecodeTarget.JSON,
            readiness_key="userStories",
            finalize=lambda result: normalize_extraction(
                {"userStories": (result or {}).get("userStories", [])}
            )["userStories"],
            merge=self._merge_user_stories,
            bypass_cache=bypass_cache,
        )

    def _merge_user_stories(self, stories: list[dict[str, Any]]) -> list[dict[str, Any]]:
        self._merge_items("userStories", stories)
        return copy.deepcopy(self.requirements["userStories"])

    async def run(
        self,
        text: str,
        *,
        validate: bool | None = None,
        apply_fixes: bool = False,
        bypass_cache: bool = False,
    ) -> dict[str, Any]:
        """Extract requirements, then validate them when configured to."""
        await self.extract_requirements(text, bypass_cache=bypass_cache)
        should_validate = self.config.require_validation if validate is None else validate
        if should_validate and self.total_count():
            await self.validate_requirements(apply_fixes=apply_fixes, bypass_cache=bypass_cache)
        return self.snapshot()

    # ------------------------------------------------------------------
    # Export
    # ------------------------------------------------------------------

    def snapshot(self) -> dict[str, Any]:
        return {
            "requirements": self.categorized(),
            "diagrams": dict(self.diagrams),
            "metadata": copy.deepcopy(self.metadata),
        }

    def restore(self, data: dict[str, Any]) -> None:
        requirements = _empty_requirements()
        for key in CATEGORIES:
            requirements[key] = [
                item
                for item in (data.get("requirements", {}).get(key) or [])
                if isinstance(item, dict) and "id" in item and "statement" in item
            ]
        self.requirements = requirements
        self.diagrams = dict(data.get("diagrams") or {})
        self.metadata.update(data.get("metadata") or {})
        self.recompute_counters()

    def export_markdown(self) -> str:
        lines = [
            "# Requirements Document",
            "",
            f"- Created: {self.metadata['createdAt']}",
            f"- Last Updated: {self.metadata['updatedAt']}",
            f"- Status: {self.metadata['status']}",
            "",
        ]
        titles = {
            "functional": "Functional Requirements",
            "nonFunctional": "Non-Functional Requirements",
            "userStories": "User Stories",
            "constraints": "Constraints",
        }
        for key, title in titles.items():
            items = self.requirements[key]
            if not items:
                continue
            lines.extend([f"## {title}", ""])
            for item in items:
                lines.append(f"### {item['id']}: {item['statement']}")
                lines.append("")
                for field_name in ("priority", "rationale", "status"):
                    if item.get(field_name):
                        lines.append(f"- **{field_name.title()}:** {item[field_name]}")
                for criterion in item.get("acceptanceCriteria") or []:
                    lines.append(f"- [ ] {criterion}")
                lines.append("")
        return "\n".join(lines).rstrip() + "\n"


def _normalize_validation(result: Any) -> dict[str, Any]:
    results = result.get("validationResults") if isinstance(result, dict) else None
    if not isinstance(results, dict):
        raise MalformedOutput("'validationResults' must be an object")
    issues = [issue for issue in results.get("issues") or [] if isinstance(issue, dict)]
    missing = [
        entry for entry in results.get("missingRequirements") or [] if isinstance(entry, dict)
    ]
    return {
        **results,
        "status": results.get("status") or ("issues_found" if issues else "valid"),
        "issueCount": len(issues),
        "issues": issues,
        "missingRequirements": missing,
    }


def _normalize_diagrams(result: Any) -> dict[str, str]:
    raw = result.get("diagrams") if isinstance(result, dict) else None
    if not isinstance(raw, dict):
        raise MalformedOutput("'diagrams' must be an object")
    diagrams: dict[str, str] = {}
    for name, value in raw.items():
        uml = extract_uml_code(value) if isinstance(value, str) else None
        if uml is None:
            logger.warning("Dropping diagram %r without an @startuml block", name)
            continue
        diagrams[str(name)] = uml
    if not diagrams:
        raise MalformedOutput("No PlantUML diagrams found in response")
    return diagrams
