"""Height-keyed entities mirrored from the remote ledger."""

from __future__ import annotations

from pydantic import Field, JsonValue
from pydantic_core import to_json

from .base import FrozenModel


class Entity(FrozenModel):
    """
    One item of a remote sequence.

    The payload is opaque to the engine. For the ``blocks`` stream it is the
    block as returned by the node; for ``transactions`` it is the list of
    transactions included at that height. Two entities at the same height are
    the same entity only if their payloads compare equal.
    """

    height: int = Field(ge=0)
    """Position in the sequence. Strictly increasing, possibly with holes."""

    payload: JsonValue
    """The data observed at this height. Immutable once fetched."""

    def encoded_size(self) -> int:
        """Approximate memory footprint: length of the payload's JSON encoding."""
        return len(to_json(self.payload))
