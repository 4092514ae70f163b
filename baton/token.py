"""
Token - the client-held state of one staged job.

A Token is returned to the client after every call and submitted again on
the next one. It carries identity, control flags, progress counters, and
the job's named data. Values too large to travel inline are replaced by
blob references and listed in blob_keys.

Lifecycle (observed via the flags):
    fresh (stage_name == "") -> running -> completed (done) | aborted (abort)
"""

import copy
import json
import random
import time
from dataclasses import dataclass, field
from typing import Any, Optional

from baton.errors import TokenError


# Crockford's Base32 alphabet (excludes I, L, O, U)
_ULID_ALPHABET = "0123456789ABCDEFGHJKMNPQRSTVWXYZ"

STATUS_FRESH = "fresh"
STATUS_RUNNING = "running"
STATUS_COMPLETED = "completed"
STATUS_ABORTED = "aborted"


def generate_ulid() -> str:
    """
    Generate a ULID (Universally Unique Lexicographically Sortable Identifier).

    ULIDs are 26 characters, encoding:
    - 48 bits of timestamp (milliseconds since Unix epoch)
    - 80 bits of randomness
    """
    timestamp_ms = int(time.time() * 1000)
    timestamp_chars = []
    for _ in range(10):
        timestamp_chars.append(_ULID_ALPHABET[timestamp_ms & 0x1F])
        timestamp_ms >>= 5
    timestamp_part = "".join(reversed(timestamp_chars))

    rng = random.SystemRandom()
    random_part = "".join(rng.choice(_ULID_ALPHABET) for _ in range(16))

    return timestamp_part + random_part


def _check_counter(name: str, value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise TokenError(f"{name} must be a non-negative integer, got {value!r}")
    return value


@dataclass
class Token:
    """
    Serializable state record for one job.

    Attributes:
        id: Opaque unique identifier, immutable after creation
        stage_name: Stage to run on the next call ("" until the first call)
        done: Set once by the engine when no more work remains
        abort: Set once when the job terminates abnormally
        error: Human-readable message, present if and only if abort is set
        iteration_count: Stage-body executions performed over the job's lifetime
        iterations_per_call: Client hint capping executions per call (0 = unbounded)
        data: Named values; blob-backed keys hold a blob reference
        blob_keys: Keys whose values live out-of-line
    """
    id: str = field(default_factory=generate_ulid)
    stage_name: str = ""
    done: bool = False
    abort: bool = False
    error: Optional[str] = None
    iteration_count: int = 0
    iterations_per_call: int = 0
    data: dict[str, Any] = field(default_factory=dict)
    blob_keys: set[str] = field(default_factory=set)

    @classmethod
    def new(
        cls,
        data: Optional[dict[str, Any]] = None,
        iterations_per_call: int = 0,
        id: Optional[str] = None,
    ) -> "Token":
        """Create a fresh token for a new job."""
        return cls(
            id=id or generate_ulid(),
            iterations_per_call=_check_counter("iterations_per_call", iterations_per_call),
            data=dict(data or {}),
        )

    @property
    def is_fresh(self) -> bool:
        return not self.stage_name and not self.is_terminal

    @property
    def is_terminal(self) -> bool:
        return self.done or self.abort

    @property
    def status(self) -> str:
        if self.done:
            return STATUS_COMPLETED
        if self.abort:
            return STATUS_ABORTED
        if not self.stage_name:
            return STATUS_FRESH
        return STATUS_RUNNING

    def select_stage(self, name: str) -> None:
        """Park the token on a stage for the next execution."""
        if not name:
            raise TokenError("Stage name must not be empty")
        self.stage_name = name

    def mark_done(self) -> None:
        """Mark the job complete. No-op once terminal."""
        if self.is_terminal:
            return
        self.done = True

    def set_abort(self, message: str) -> None:
        """Mark the job aborted with a message. No-op once terminal."""
        if self.is_terminal:
            return
        self.abort = True
        self.error = message

    def copy(self) -> "Token":
        """Deep copy, used as the engine's working copy for one call."""
        return copy.deepcopy(self)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to the wire form."""
        result = {
            "id": self.id,
            "stage_name": self.stage_name,
            "done": self.done,
            "abort": self.abort,
            "iteration_count": self.iteration_count,
            "iterations_per_call": self.iterations_per_call,
            "data": self.data,
            "blob_keys": sorted(self.blob_keys),
        }
        if self.abort:
            result["error"] = self.error or ""
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Token":
        """
        Deserialize from the wire form.

        Raises:
            TokenError: If the token violates its invariants
        """
        if not isinstance(data, dict):
            raise TokenError(f"Token must be a mapping, got {type(data).__name__}")

        job_id = data.get("id")
        if not isinstance(job_id, str) or not job_id:
            raise TokenError("Token id is missing or empty")

        done = bool(data.get("done", False))
        abort = bool(data.get("abort", False))
        if done and abort:
            raise TokenError(f"Token {job_id} is both done and aborted")

        error = data.get("error")
        if error is not None and not abort:
            raise TokenError(f"Token {job_id} has an error but is not aborted")

        payload = data.get("data", {})
        if not isinstance(payload, dict):
            raise TokenError(f"Token {job_id} data must be a mapping")

        blob_keys = set(data.get("blob_keys", []))
        missing = blob_keys - set(payload)
        if missing:
            raise TokenError(
                f"Token {job_id} blob_keys not present in data: {', '.join(sorted(missing))}"
            )

        stage_name = data.get("stage_name") or ""
        if not isinstance(stage_name, str):
            raise TokenError(f"Token {job_id} stage_name must be a string")

        return cls(
            id=job_id,
            stage_name=stage_name,
            done=done,
            abort=abort,
            error=(error or "") if abort else None,
            iteration_count=_check_counter("iteration_count", data.get("iteration_count", 0)),
            iterations_per_call=_check_counter(
                "iterations_per_call", data.get("iterations_per_call", 0)
            ),
            data=dict(payload),
            blob_keys=blob_keys,
        )

    def to_json(self) -> str:
        return json.dumps(self.to_dict())

    @classmethod
    def from_json(cls, text: str) -> "Token":
        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            raise TokenError(f"Token is not valid JSON: {e}")
        return cls.from_dict(data)
