"""
Database models and data structures
"""

import json
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional


@dataclass
class ConnectionEventRecord:
    """Database record for one connection or reconnection state change"""
    camera_id: str
    ts: datetime
    source: str                 # 'connection' or 'reconnection'
    state: str
    previous_state: Optional[str] = None
    protocol: Optional[str] = None
    outcome: Optional[str] = None
    message: Optional[str] = None
    attempt: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'camera_id': self.camera_id,
            'ts': self.ts.isoformat(),
            'source': self.source,
            'state': self.state,
            'previous_state': self.previous_state,
            'protocol': self.protocol,
            'outcome': self.outcome,
            'message': self.message,
            'attempt': self.attempt
        }


def decode_record(value) -> Dict[str, Any]:
    """JSONB columns come back from asyncpg as text unless a codec is registered"""
    if isinstance(value, (bytes, bytearray)):
        value = value.decode('utf-8')
    if isinstance(value, str):
        return json.loads(value)
    return dict(value) if value else {}
