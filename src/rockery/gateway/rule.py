"""
Rockery Mocking Rule

Data model for a single mocking rule: an exact request matcher paired with a
canned response.
"""

from dataclasses import dataclass, asdict
from typing import Dict, Any, Optional, Tuple


# Methods eligible for mock lookup; anything else is always forwarded.
INTERCEPTABLE_METHODS: Tuple[str, ...] = ('GET', 'HEAD', 'POST', 'PUT', 'DELETE', 'PATCH')

MIN_STATUS_CODE = 100
MAX_STATUS_CODE = 599


def is_valid_status_code(status_code: Any) -> bool:
    """Check that a value can be sent as an HTTP status code (100-599)."""
    if isinstance(status_code, bool) or not isinstance(status_code, int):
        return False
    return MIN_STATUS_CODE <= status_code <= MAX_STATUS_CODE


@dataclass
class MockingRule:
    """
    A stored (request matcher -> canned response) pair.

    ``id`` stays ``None`` until the rule store persists the rule. The four
    ``request_*`` fields are matched exactly; ``None`` only matches absence.
    """

    request_method: str
    request_url: str
    response_status_code: int
    response_data: Optional[str] = None
    request_query: Optional[str] = None
    request_data: Optional[str] = None
    id: Optional[int] = None

    @property
    def is_persisted(self) -> bool:
        return self.id is not None

    @property
    def criteria(self) -> Dict[str, Optional[str]]:
        """Matching fields in the shape accepted by ``RuleStore.find``."""
        return {
            'url': self.request_url,
            'query': self.request_query,
            'method': self.request_method,
            'data': self.request_data,
        }

    def display_id(self) -> str:
        return str(self.id) if self.id is not None else '<None>'

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return asdict(self)
