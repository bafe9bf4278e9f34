"""Parsing and validation of decomposer agent output.

The decomposer is asked to answer in this markdown shape::

    ## Decision: DECOMPOSE

    ## Reasoning
    The issue bundles three unrelated changes.

    ## Sub-Tasks

    ### Sub-Task 1: Add CSV export
    **Description:** Export the report table as CSV from the toolbar.
    **Acceptance Criteria:**
    - [ ] Toolbar has an "Export CSV" button
    - [ ] Exported file opens in spreadsheet tools
    **Estimated Complexity:** Low

The output is untrusted. ``parse_decomposition`` never raises: anything it
cannot recognize is left out, and a missing decision marker means PROCEED.
``validate_decomposition`` is the gate that decides whether a parsed
result may be acted on.
"""

import re

import structlog

from issue_pipeline.exceptions import ValidationError
from issue_pipeline.models.domain import Complexity, Decomposition, SubTaskSpec

log = structlog.get_logger(__name__)

COMPLEXITY_KEYWORDS = (
    "multiple tasks",
    "several tasks",
    "and also",
    "additionally",
    "furthermore",
    "multiple components",
    "complex issue",
    "various aspects",
    "different areas",
)

_DECISION_PATTERN = re.compile(r"##\s*Decision:\s*(DECOMPOSE|PROCEED)\b", re.IGNORECASE)
_REASONING_PATTERN = re.compile(r"##\s*Reasoning\s*\n(.*?)(?=^\s*##|\Z)", re.IGNORECASE | re.DOTALL | re.MULTILINE)
_SUB_TASK_PATTERN = re.compile(
    r"^###\s*Sub-Task\s*\d+\s*:\s*(?P<title>[^\n]*)\n(?P<body>.*?)(?=^###\s*Sub-Task|^##\s|\Z)",
    re.IGNORECASE | re.DOTALL | re.MULTILINE,
)
_DESCRIPTION_PATTERN = re.compile(
    r"\*\*Description:\*\*\s*(.*?)(?=\n\s*\*\*[A-Za-z ]+:\*\*|\Z)", re.IGNORECASE | re.DOTALL
)
_CRITERIA_SECTION_PATTERN = re.compile(
    r"\*\*Acceptance Criteria:\*\*\s*\n(.*?)(?=\n\s*\*\*[A-Za-z ]+:\*\*|\Z)", re.IGNORECASE | re.DOTALL
)
_CRITERION_PATTERN = re.compile(r"^\s*[-*]\s*\[.?\]\s*(.+?)\s*$", re.MULTILINE)
_COMPLEXITY_PATTERN = re.compile(r"\*\*Estimated Complexity:\*\*\s*(low|medium|high)\b", re.IGNORECASE)
_BULLET_PATTERN = re.compile(r"^\s*[-*]\s+", re.MULTILINE)
_AND_PATTERN = re.compile(r"\band\b", re.IGNORECASE)


def analyze_complexity(text: str) -> bool:
    """Cheap pre-filter: does the text look like it bundles several tasks?

    True when any multi-part phrase appears, when there are at least four
    bullet lines, or when the word "and" occurs at least three times.
    """
    if not text:
        return False
    lowered = text.lower()
    if any(keyword in lowered for keyword in COMPLEXITY_KEYWORDS):
        return True
    if len(_BULLET_PATTERN.findall(text)) >= 4:
        return True
    return len(_AND_PATTERN.findall(text)) >= 3


def _parse_sub_task(title: str, body: str) -> SubTaskSpec:
    description_match = _DESCRIPTION_PATTERN.search(body)
    description = " ".join(description_match.group(1).split()) if description_match else ""

    criteria: list[str] = []
    criteria_match = _CRITERIA_SECTION_PATTERN.search(body)
    if criteria_match:
        criteria = [c.strip() for c in _CRITERION_PATTERN.findall(criteria_match.group(1)) if c.strip()]

    complexity_match = _COMPLEXITY_PATTERN.search(body)
    complexity = Complexity(complexity_match.group(1).lower()) if complexity_match else Complexity.MEDIUM

    return SubTaskSpec(
        title=title.strip(),
        description=description,
        acceptance_criteria=tuple(criteria),
        estimated_complexity=complexity,
    )


def parse_decomposition(text: str) -> Decomposition:
    """Parse decomposer output. Never raises.

    Sub-tasks are kept even when incomplete so that validation can reject
    the whole proposal instead of silently acting on a subset.
    """
    text = text or ""

    decision_match = _DECISION_PATTERN.search(text)
    should_decompose = bool(decision_match) and decision_match.group(1).upper() == "DECOMPOSE"

    reasoning_match = _REASONING_PATTERN.search(text)
    reasoning = reasoning_match.group(1).strip() if reasoning_match else ""

    if not should_decompose:
        return Decomposition(should_decompose=False, reasoning=reasoning)

    sub_tasks = [_parse_sub_task(m.group("title"), m.group("body")) for m in _SUB_TASK_PATTERN.finditer(text)]
    log.info("decomposition_parsed", should_decompose=True, sub_task_count=len(sub_tasks))
    return Decomposition(should_decompose=True, sub_tasks=sub_tasks, reasoning=reasoning)


def validate_decomposition(
    decomposition: Decomposition,
    max_sub_tasks: int = 5,
    min_title_length: int = 3,
    min_description_length: int = 10,
) -> None:
    """Check that a DECOMPOSE proposal is safe to act on.

    A PROCEED decision is always valid.

    Raises:
        ValidationError: Listing every problem found
    """
    if not decomposition.should_decompose:
        return

    errors: list[str] = []
    count = len(decomposition.sub_tasks)
    if count == 0:
        errors.append("Decision is DECOMPOSE but no sub-tasks found")
    if count > max_sub_tasks:
        errors.append(f"Too many sub-tasks: {count} (max: {max_sub_tasks})")

    for index, sub_task in enumerate(decomposition.sub_tasks, start=1):
        if len(sub_task.title) < min_title_length:
            errors.append(f"Sub-task {index}: Title too short or missing")
        if len(sub_task.description) < min_description_length:
            errors.append(f"Sub-task {index}: Description too short or missing")
        if not sub_task.acceptance_criteria:
            errors.append(f"Sub-task {index}: No acceptance criteria")

    if errors:
        raise ValidationError("Invalid decomposition", errors=errors)
