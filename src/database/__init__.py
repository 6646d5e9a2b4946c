"""
Database module for discovery cache and connection history persistence
"""

from .manager import DatabaseManager
from .models import ConnectionEventRecord, decode_record

__all__ = ['DatabaseManager', 'ConnectionEventRecord', 'decode_record']
