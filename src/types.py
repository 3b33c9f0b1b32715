from dataclasses import asdict, dataclass, field
import time
import uuid

from .exceptions import RunRecordError

ROLE_PRIMARY = 'primary'
ROLE_STANDBY = 'standby'

CHANNEL_ACTIVE = 'active'
# Subscription disabled, whoever disabled it
CHANNEL_PAUSED = 'paused'
CHANNEL_DROPPED = 'dropped'

STEP_PENDING = 'pending'
STEP_SUCCESS = 'success'
STEP_FAILED = 'failed'
STEP_SKIPPED = 'skipped'

SEQ_UPDATED = 'updated'
SEQ_SKIPPED = 'skipped_already_ahead'
SEQ_ERROR = 'error'

OUTCOME_SUCCESS = 'success'
OUTCOME_ROLLED_BACK = 'rolled_back'
OUTCOME_ABORTED = 'aborted'
OUTCOME_DEGRADED = 'degraded'

# pg_subscription_rel.srsubstate codes
TABLE_STATES = {
    'i': 'initializing',
    'd': 'copying_data',
    'f': 'finished_copy',
    's': 'syncing',
    'r': 'ready',
}

PoolStatus = dict[str, int]


@dataclass
class HealthReport:
    host: str
    role: str
    reachable: bool = False
    read_only: bool | None = None
    active_connection_count: int | None = None
    replication_slot_active: bool | None = None
    lag_bytes: int | None = None
    # standby only
    subscription_exists: bool | None = None
    subscription_enabled: bool | None = None
    last_message_age: float | None = None
    tables_ready: int | None = None
    tables_total: int | None = None
    error: str | None = None


@dataclass
class Node:
    role: str
    host: str
    health: HealthReport | None = None


@dataclass
class ReplicationChannel:
    publication: str
    subscription: str
    slot_name: str
    lag_bytes: int | None = None
    state: str = CHANNEL_ACTIVE


@dataclass
class SequenceState:
    name: str
    primary_value: int | None = None
    standby_value: int | None = None
    buffer: int = 0
    resulting_value: int | None = None
    status: str | None = None
    error: str | None = None


@dataclass
class ProxyState:
    upstream: str | None
    paused: bool
    reachable: bool = True
    pools: dict[str, PoolStatus] = field(default_factory=dict)


@dataclass
class StepResult:
    name: str
    status: str = STEP_PENDING
    timestamp: float = field(default_factory=time.time)
    error: str | None = None
    detail: str | None = None


@dataclass
class FailoverRun:
    """
    Append-only audit record of one failover invocation.
    """

    primary: str
    standby: str
    skip_freeze: bool = False
    dry_run: bool = False
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    started_at: float = field(default_factory=time.time)
    steps: list[StepResult] = field(default_factory=list)
    states: list[tuple[str, float]] = field(default_factory=list)
    finished_at: float | None = None
    outcome: str | None = None
    rto_seconds: float | None = None
    rpo_bytes: int | None = None
    remediation: str | None = None

    def _ensure_open(self):
        if self.outcome is not None:
            raise RunRecordError(f'run {self.id} is already finished with outcome {self.outcome}')

    def record_step(self, step: StepResult):
        self._ensure_open()
        self.steps.append(step)
        return step

    def enter_state(self, state: str, ts: float | None = None):
        self._ensure_open()
        self.states.append((state, ts if ts is not None else time.time()))

    def state_timestamp(self, state: str) -> float | None:
        for name, ts in self.states:
            if name == state:
                return ts
        return None

    @property
    def current_state(self) -> str | None:
        if not self.states:
            return None
        return self.states[-1][0]

    def finish(self, outcome: str, remediation: str | None = None):
        self._ensure_open()
        self.remediation = remediation
        self.finished_at = time.time()
        self.outcome = outcome

    def as_dict(self):
        data = asdict(self)
        data['states'] = [{'state': name, 'timestamp': ts} for name, ts in self.states]
        return data
