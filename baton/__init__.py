"""
baton - Staged jobs driven by a client-held token

A long-running job is split into a sequence of stateless calls. Progress
travels in a Token that the client returns on every call; the server
persists the job's state between calls through a pluggable Backend.
"""

__version__ = "0.1.0"


__all__ = [
    "Token",
    "StageRegistry",
    "JobContext",
    "JobEngine",
    "CallResult",
    "Outcome",
    "run_job",
    "Backend",
    "FileBackend",
    "InMemoryBackend",
    "CleanupReport",
    "get_backend",
    "run_cleanup",
    "BatonConfig",
    "load_config",
    "get_baton_home",
]

from .config import BatonConfig, load_config, get_baton_home
from .token import Token
from .stages import StageRegistry
from .backend import Backend, FileBackend, InMemoryBackend, CleanupReport, get_backend
from .engine import JobContext, JobEngine, CallResult, Outcome, run_job
from .cleanup import run_cleanup
