"""
Relay module for the media relay service.

Origin fetching, stream fan-out, orchestration, moves and raw uploads.
"""

from .tee import StreamTee, TeeBranch
from .origin import OriginClient
from .orchestrator import RelayOrchestrator, create_orchestrator
from .mover import MoveOperator, create_move_operator
from .raw_upload import RawUploader, create_raw_uploader, pending_metadata

__all__ = [
    'StreamTee',
    'TeeBranch',
    'OriginClient',
    'RelayOrchestrator',
    'create_orchestrator',
    'MoveOperator',
    'create_move_operator',
    'RawUploader',
    'create_raw_uploader',
    'pending_metadata',
]
