"""
Prompt Loading Utilities
========================

Default system prompts for each generation operation, overridable by
dropping `<name>.md` into the configured prompts directory. Templates use
`$placeholder` substitution so JSON examples need no escaping.
"""

from __future__ import annotations

import logging
from functools import lru_cache
from pathlib import Path
from string import Template

from config import get_config

logger = logging.getLogger(__name__)


DEFAULT_PROMPTS: dict[str, str] = {
    "extraction": """\
You are a senior requirements engineer. Extract clear, specific requirements
from the user's text and sort them into four categories:

1. functional: what the system must do
2. nonFunctional: quality attributes (performance, security, usability)
3. constraints: technical, business or regulatory limits
4. userStories: "As a <role>, I want <feature> so that <benefit>"

For every item give an id (FR-1, NFR-1, CON-1, US-1), a "statement" written
as a "shall" sentence, a "priority" (critical, high, medium, low) and a short
"rationale". Extract only what is stated or strongly implied.

Respond with JSON only:
{"functional": [...], "nonFunctional": [...], "constraints": [...], "userStories": [...]}
""",
    "validation": """\
You review software requirements for completeness, clarity, consistency,
testability and feasibility. For each problem name the requirement id, the
issue type, what is wrong, and a concrete rewrite in "suggestion".

Respond with JSON only:
{"validationResults": {"status": "valid" | "issues_found", "issueCount": 0,
 "issues": [{"requirementId": "FR-1", "issueType": "clarity",
             "description": "...", "suggestion": "..."}],
 "missingRequirements": [{"category": "functional", "description": "...",
                          "suggestion": "..."}]}}
""",
    "diagrams": """\
You are a software architect. From the requirements, write a UML class
diagram and a sequence diagram for the primary user flow in PlantUML. Each
diagram must be a complete script between @startuml and @enduml.

Respond with JSON only:
{"diagrams": {"classDiagram": "@startuml ... @enduml",
              "sequenceDiagram": "@startuml ... @enduml"}}
""",
    "user_stories": """\
Turn the functional requirements into user stories ("As a <role>, I want to
<action>, so that <benefit>") with 3-5 acceptance criteria, Fibonacci story
points and the related requirement ids.

Respond with JSON only:
{"userStories": [{"id": "US-1", "statement": "...", "acceptanceCriteria": [],
                  "storyPoints": 3, "priority": "high",
                  "relatedRequirements": ["FR-1"]}]}
""",
    "structure": """\
You plan the file layout of a $framework application. List every file the
project needs with a one-line purpose.

Respond with JSON only:
{"files": [{"path": "app/page.js", "purpose": "..."}],
 "dependencies": {"package": "version"}}
""",
    "file": """\
You write production-ready $framework source code. Return the complete
contents of the requested file in a single fenced code block and nothing
else.
""",
    "analyze": """\
You are an expert code reviewer. Analyze the code for syntax errors, logic
bugs, missing or wrong imports, $framework anti-patterns, dependency issues
and formatting problems. Give each issue a type, location, description,
severity (critical, high, medium, low) and a proposed fix.

Respond with JSON only:
{"issues": [...], "missingDependencies": ["package"], "overallAssessment": "..."}
If nothing is wrong return {"issues": [], "missingDependencies": [], "overallAssessment": "Code looks good"}.
""",
    "fix": """\
You fix code. Apply only the changes needed to resolve the listed issues and
return the complete fixed file in a single fenced code block.
""",
    "repair_json": """\
Your previous reply was not valid JSON. Return the same content again as a
single valid JSON object with no markdown fences or commentary.
""",
}


def _prompts_dir() -> Path:
    """Return the prompts directory from config."""
    return Path(__file__).parent / get_config().prompts_dir


@lru_cache(maxsize=None)
def load_prompt(name: str) -> str:
    """Load a prompt template, preferring an override file in the prompts directory."""
    override = _prompts_dir() / f"{name}.md"
    if override.is_file():
        logger.debug("Using prompt override %s", override)
        return override.read_text(encoding="utf-8")
    if name not in DEFAULT_PROMPTS:
        raise KeyError(f"Unknown prompt template: {name}")
    return DEFAULT_PROMPTS[name]


def render_prompt(name: str, **values: object) -> str:
    """Load and fill a template. Unknown placeholders are left as-is."""
    return Template(load_prompt(name)).safe_substitute(
        {key: str(value) for key, value in values.items()}
    )
