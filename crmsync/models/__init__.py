"""
Data Models
Dataclasses for all entities. These are pure Python objects, no database logic.
"""

from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional


# Processing order matters: organization ids are needed by persons and deals
CATEGORIES = ('organization', 'person', 'deal')
SOURCES = ('user', 'order', 'product')

STATE_TODO = 'TODO'
STATE_SENDED = 'SENDED'
STATE_DONE = 'DONE'
STATE_ERROR = 'ERROR'
STATE_INVALID = 'INVALID'
STATE_CANCELED = 'CANCELED'
STATES = (STATE_TODO, STATE_SENDED, STATE_DONE, STATE_ERROR, STATE_INVALID, STATE_CANCELED)

REQUIRED_FIELDS = {
    'deal': ('title',),
    'person': ('name',),
    'organization': ('name',),
}


@dataclass
class TracebackEntry:
    """One diagnostic step recorded on a query"""
    step: str
    success: bool
    message: str = ''
    date: Optional[str] = None
    additional_data: Optional[Dict[str, Any]] = None
    internal: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class Query:
    """Persisted unit of CRM sync work (one row of the outbox)"""
    id: Optional[int] = None
    category: Optional[str] = None
    source: Optional[str] = None
    source_id: Optional[int] = None
    target_id: Optional[int] = None
    hook: Optional[str] = None
    method: Optional[str] = None
    state: str = STATE_TODO
    payload: Dict[str, Any] = field(default_factory=dict)
    pipedrive_response: Optional[Dict[str, Any]] = None
    additional_data: Dict[str, Any] = field(default_factory=dict)
    user_id: Optional[int] = None

    @property
    def traceback(self) -> List[Dict[str, Any]]:
        return self.additional_data.setdefault('traceback', [])

    @property
    def total_error(self) -> int:
        return int(self.additional_data.get('total_error') or 0)


@dataclass
class FieldValue:
    """A resolved CRM field ready to be sent"""
    key: str
    name: Optional[str]
    value: Any
    condition: Optional[Dict[str, Any]] = None
    pipedrive_field_id: Optional[int] = None
    is_logic_block: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            'key': self.key,
            'name': self.name,
            'value': self.value,
            'condition': self.condition,
            'pipedriveFieldId': self.pipedrive_field_id,
            'isLogicBlock': self.is_logic_block,
        }


@dataclass
class DeliveryResponse:
    """Outcome of one HTTP call to the gateway. Never raised, always returned."""
    success: bool
    status_code: Optional[int] = None
    data: Optional[Dict[str, Any]] = None
    raw: Optional[str] = None
    error: Optional[str] = None


@dataclass
class SendResult:
    """Outcome of Query send()"""
    success: bool
    message: str
    data: Optional[Dict[str, Any]] = None
    pipedrive_response: Optional[Dict[str, Any]] = None
    traceback: List[Dict[str, Any]] = field(default_factory=list)
    target_id: Optional[int] = None
    post_query_response: Optional[DeliveryResponse] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class Pagination:
    total_items: int = 0
    total_pages: int = 0
    has_next_page: bool = False


@dataclass
class QueryPage:
    """One page of Query Store results"""
    items: List[Query] = field(default_factory=list)
    pagination: Pagination = field(default_factory=Pagination)
    error: Optional[str] = None


@dataclass
class SyncRunState:
    """Progress and control flags of the bulk sync, persisted as a single row"""
    running: bool = False
    started: bool = False
    last_heartbeat: Optional[datetime] = None
    last_sync: Optional[datetime] = None
    last_error: Optional[str] = None
    progress_users: int = 0
    progress_orders: int = 0
    total_users: int = 0
    current_user: int = 0
    total_orders: int = 0
    current_order: int = 0
    current_user_index: int = 0
    current_order_index: int = 0
    total_person_errors: int = 0
    total_person_uptodate: int = 0
    total_person_done: int = 0
    total_order_errors: int = 0
    total_order_uptodate: int = 0
    total_order_done: int = 0

    def counters(self) -> Dict[str, int]:
        return {name: getattr(self, name) for name in COUNTER_FIELDS}


COUNTER_FIELDS = (
    'total_users', 'current_user', 'total_orders', 'current_order',
    'current_user_index', 'current_order_index',
    'total_person_errors', 'total_person_uptodate', 'total_person_done',
    'total_order_errors', 'total_order_uptodate', 'total_order_done',
)


def utc_timestamp() -> str:
    """ISO-8601 UTC timestamp used in additional_data and tracebacks."""
    return datetime.now(timezone.utc).strftime('%Y-%m-%dT%H:%M:%SZ')
