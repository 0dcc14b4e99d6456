"""
Account Model Module

The account entity shared by the storage backends, the balance engine
and the account service. Balances are whole numbers of the smallest
currency unit.
"""

from datetime import datetime, timezone
from dataclasses import dataclass, asdict, replace
from typing import Dict, Any, Optional


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Account:
    """
    Stored account record

    Instances are snapshots of a row; mutations go through the store,
    which hands back a fresh snapshot.
    """
    id: int
    first_name: str
    last_name: str
    number: int
    balance: int
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary with ISO timestamps"""
        result = asdict(self)
        result['created_at'] = self.created_at.isoformat()
        result['updated_at'] = self.updated_at.isoformat()
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Account':
        """Create instance from dictionary"""
        data = dict(data)
        for key in ('created_at', 'updated_at'):
            if isinstance(data.get(key), str):
                data[key] = datetime.fromisoformat(data[key])
        return cls(**data)

    def with_changes(self, updated_at: Optional[datetime] = None, **changes) -> 'Account':
        """Return a copy with the given fields changed and updated_at refreshed"""
        return replace(self, updated_at=updated_at or utc_now(), **changes)
