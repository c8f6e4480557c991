"""
Outcome samples and the compressed batch encoding used by mobile adapters.

Compressed format: entries separated by ';', fields by '|':
    wager|payout|timestamp[|bonus]
bonus is 1/0 and optional. Decoding is all-or-nothing: one malformed entry
rejects the whole batch.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, Iterable

from trust_pipeline.core.exceptions import PayloadDecodeError

COMPRESSED_EVENT_TYPE = "gameplay.batch.recorded"
ENTRY_SEPARATOR = ";"
FIELD_SEPARATOR = "|"


@dataclass(frozen=True)
class OutcomeSample:
    """Single wager/payout outcome. Immutable; timestamp in Unix ms."""

    session_id: str
    actor_id: str
    venue_id: str
    game_id: str
    wager_amount: float
    payout_amount: float
    timestamp: int
    is_bonus: bool = False

    @property
    def session_key(self) -> tuple[str, str]:
        return (self.actor_id, self.venue_id)

    @property
    def is_win(self) -> bool:
        return self.payout_amount > 0

    @property
    def return_ratio(self) -> float:
        """payout / wager; 0 when nothing was wagered."""
        if self.wager_amount <= 0:
            return 0.0
        return self.payout_amount / self.wager_amount

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "actor_id": self.actor_id,
            "venue_id": self.venue_id,
            "game_id": self.game_id,
            "wager_amount": self.wager_amount,
            "payout_amount": self.payout_amount,
            "timestamp": self.timestamp,
            "is_bonus": self.is_bonus,
        }


def _parse_amount(raw: str, field_name: str, index: int) -> float:
    try:
        value = float(raw)
    except ValueError as e:
        raise PayloadDecodeError(
            COMPRESSED_EVENT_TYPE, f"entry {index}: {field_name} {raw!r} is not a number"
        ) from e
    if not math.isfinite(value) or value < 0:
        raise PayloadDecodeError(
            COMPRESSED_EVENT_TYPE, f"entry {index}: {field_name} must be finite and >= 0"
        )
    return value


def decode_compressed_samples(
    data: str,
    *,
    session_id: str,
    actor_id: str,
    venue_id: str,
    game_id: str,
) -> list[OutcomeSample]:
    """Decode 'wager|payout|timestamp[|bonus];...' into samples. Empty data -> []."""
    if not data or not data.strip():
        return []
    samples: list[OutcomeSample] = []
    for index, entry in enumerate(data.strip().strip(ENTRY_SEPARATOR).split(ENTRY_SEPARATOR)):
        fields = entry.strip().split(FIELD_SEPARATOR)
        if len(fields) not in (3, 4):
            raise PayloadDecodeError(
                COMPRESSED_EVENT_TYPE, f"entry {index}: expected 3 or 4 fields, got {len(fields)}"
            )
        wager = _parse_amount(fields[0], "wager", index)
        payout = _parse_amount(fields[1], "payout", index)
        try:
            timestamp = int(fields[2])
        except ValueError as e:
            raise PayloadDecodeError(
                COMPRESSED_EVENT_TYPE, f"entry {index}: timestamp {fields[2]!r} is not an integer"
            ) from e
        is_bonus = False
        if len(fields) == 4:
            if fields[3] not in ("0", "1"):
                raise PayloadDecodeError(
                    COMPRESSED_EVENT_TYPE, f"entry {index}: bonus flag must be 0 or 1"
                )
            is_bonus = fields[3] == "1"
        samples.append(
            OutcomeSample(
                session_id=session_id,
                actor_id=actor_id,
                venue_id=venue_id,
                game_id=game_id,
                wager_amount=wager,
                payout_amount=payout,
                timestamp=timestamp,
                is_bonus=is_bonus,
            )
        )
    return samples


def encode_compressed_samples(samples: Iterable[OutcomeSample]) -> str:
    """Inverse of decode_compressed_samples (session/actor/venue/game are carried out of band)."""
    parts = []
    for s in samples:
        fields = [f"{s.wager_amount:.15g}", f"{s.payout_amount:.15g}", str(s.timestamp)]
        if s.is_bonus:
            fields.append("1")
        parts.append(FIELD_SEPARATOR.join(fields))
    return ENTRY_SEPARATOR.join(parts)
