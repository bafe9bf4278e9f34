"""Stage catalog configuration.

A stage binds one agent template to one artifact. The catalog is ordered; the
orchestrator runs it strictly in sequence. Behavior that belongs to a specific
stage is keyed by the stage's ``agent`` identifier (see
``issue_pipeline.engine.hooks``), so reordering or inserting stages never
requires touching unrelated code.
"""

from pydantic import BaseModel, Field


class StageDefinition(BaseModel):
    """One entry of the stage catalog."""

    name: str = Field(..., description="Stable stage identifier stored on StageRecord")
    agent: str = Field(..., description="Agent template name ({agents_dir}/{agent}.md)")
    requires_approval: bool = Field(default=False, description="Halt for human approval after this stage")
    artifact_name: str = Field(..., description="File name for the stage output under the task directory")
    tools_enabled: bool = Field(default=False, description="Give the agent sandboxed file tools")


DEFAULT_STAGES: list[StageDefinition] = [
    StageDefinition(name="intake", agent="intake", artifact_name="intake-analysis.md"),
    StageDefinition(name="triage", agent="detective", artifact_name="triage-report.md"),
    StageDefinition(name="root_cause", agent="archaeologist", artifact_name="root-cause-analysis.md"),
    StageDefinition(
        name="implementation",
        agent="surgeon",
        artifact_name="implementation-plan.md",
        tools_enabled=True,
    ),
    StageDefinition(name="code_review", agent="critic", artifact_name="code-review.md"),
    StageDefinition(name="testing", agent="validator", artifact_name="test-results.md"),
    StageDefinition(name="qa", agent="skeptic", artifact_name="qa-report.md"),
    StageDefinition(name="staging", agent="gatekeeper", artifact_name="staging-deployment.md"),
    StageDefinition(name="uat", agent="advocate", artifact_name="uat-results.md"),
    StageDefinition(name="production_planning", agent="planner", artifact_name="production-plan.md"),
    StageDefinition(name="production", agent="commander", artifact_name="deployment-log.md"),
    StageDefinition(name="monitoring", agent="guardian", artifact_name="monitoring-report.md"),
    StageDefinition(name="documentation", agent="historian", artifact_name="retrospective.md"),
    StageDefinition(name="knowledge", agent="archivist", artifact_name="wiki-updates.md"),
]


def default_stages() -> list[StageDefinition]:
    """Fresh copies of the default catalog."""
    return [stage.model_copy() for stage in DEFAULT_STAGES]
