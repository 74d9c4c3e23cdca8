from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional


@dataclass
class User:
    id: str
    email: str
    role: Optional[str] = "viewer"
    custom_permissions: List[str] = field(default_factory=list)
    name: Optional[str] = None
    is_active: bool = True
    created_at: datetime = field(default_factory=datetime.utcnow)


@dataclass
class Role:
    name: str
    description: str = ""
    permissions: List[str] = field(default_factory=list)


@dataclass
class UserAuthCredential:
    user_id: str
    password_hash: Optional[str] = None
    password_algo: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.utcnow)
    last_updated_at: Optional[datetime] = None
