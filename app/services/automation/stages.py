"""Static stage catalogues: ordering, progress bands and status messages."""

from dataclasses import dataclass, field


@dataclass(frozen=True, slots=True)
class SubStageDefinition:
    key: str
    label: str
    progress_offset: int


@dataclass(frozen=True, slots=True)
class StageDefinition:
    key: str
    label: str
    progress_start: int
    progress_end: int
    message: str
    awaits_approval: bool = False
    sub_stages: tuple[SubStageDefinition, ...] = ()
    required_sub_stages: tuple[str, ...] = ()

    @property
    def is_multi_agent(self) -> bool:
        return bool(self.sub_stages)

    def sub_stage(self, key: str) -> SubStageDefinition | None:
        for sub in self.sub_stages:
            if sub.key == key:
                return sub
        return None


@dataclass(frozen=True, slots=True)
class StageCatalogue:
    name: str
    stages: tuple[StageDefinition, ...]
    _index: dict[str, int] = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "_index", {stage.key: idx for idx, stage in enumerate(self.stages)})

    @property
    def order(self) -> list[str]:
        return [stage.key for stage in self.stages]

    @property
    def first(self) -> StageDefinition:
        return self.stages[0]

    @property
    def last(self) -> StageDefinition:
        return self.stages[-1]

    def __contains__(self, key: str) -> bool:
        return key in self._index

    def stage(self, key: str) -> StageDefinition:
        try:
            return self.stages[self._index[key]]
        except KeyError as exc:
            raise ValueError(f"Unknown stage '{key}' for {self.name}") from exc

    def index(self, key: str) -> int:
        return self._index[self.stage(key).key]


MONTHLY_AGENT_SUB_STAGES = (
    SubStageDefinition("data_fetch", "Fetching data", 0),
    SubStageDefinition("summary_agent", "Summary Agent", 10),
    SubStageDefinition("referral_engine", "Referral Engine", 22),
    SubStageDefinition("opportunity_agent", "Opportunity Agent", 34),
    SubStageDefinition("cro_optimizer", "CRO Optimizer", 46),
)
REQUIRED_MONTHLY_AGENTS = ("summary_agent", "opportunity_agent", "cro_optimizer")

PMS_AUTOMATION = StageCatalogue(
    name="pms_automation",
    stages=(
        StageDefinition("file_upload", "File Upload", 0, 10, "Uploading file..."),
        StageDefinition("pms_parser", "PMS Parser", 10, 20, "Processing PMS data..."),
        StageDefinition("admin_approval", "Admin Approval", 20, 30, "Awaiting admin review", awaits_approval=True),
        StageDefinition("client_approval", "Client Approval", 30, 40, "Awaiting client approval", awaits_approval=True),
        StageDefinition(
            "monthly_agents",
            "Monthly Agents",
            40,
            90,
            "Running monthly agents...",
            sub_stages=MONTHLY_AGENT_SUB_STAGES,
            required_sub_stages=REQUIRED_MONTHLY_AGENTS,
        ),
        StageDefinition("task_creation", "Task Creation", 90, 98, "Creating tasks..."),
        StageDefinition("complete", "Complete", 98, 100, "Automation complete"),
    ),
)

CLIENT_RUN = StageCatalogue(
    name="client_run",
    stages=(
        StageDefinition("credentials", "Credentials", 0, 5, "Acquiring credentials..."),
        StageDefinition("daily_agent", "Daily Agent", 5, 30, "Running daily agent..."),
        StageDefinition(
            "monthly_agents",
            "Monthly Agents",
            30,
            85,
            "Running monthly agents...",
            sub_stages=(
                SubStageDefinition("data_fetch", "Fetching data", 0),
                SubStageDefinition("summary_agent", "Summary Agent", 10),
                SubStageDefinition("opportunity_agent", "Opportunity Agent", 25),
                SubStageDefinition("cro_optimizer", "CRO Optimizer", 40),
            ),
            required_sub_stages=REQUIRED_MONTHLY_AGENTS,
        ),
        StageDefinition("commit", "Saving Results", 85, 95, "Saving results..."),
        StageDefinition("task_creation", "Task Creation", 95, 98, "Creating tasks..."),
        StageDefinition("complete", "Complete", 98, 100, "Run complete"),
    ),
)

RANKING = StageCatalogue(
    name="ranking",
    stages=(
        StageDefinition("queued", "Queued", 0, 10, "Analysis queued"),
        StageDefinition("fetching_metrics", "Fetching Metrics", 10, 90, "Fetching location metrics..."),
        StageDefinition("awaiting_llm", "AI Analysis", 90, 98, "Sending to AI for gap analysis..."),
        StageDefinition("done", "Done", 98, 100, "Analysis complete"),
    ),
)

CATALOGUE_BY_JOB_KIND = {"pms": PMS_AUTOMATION, "agent_run": CLIENT_RUN, "ranking": RANKING}
