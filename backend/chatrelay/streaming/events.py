from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict


class Usage(BaseModel):
    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0

    @classmethod
    def of(cls, input_tokens: Optional[int], output_tokens: Optional[int], total: Optional[int] = None) -> "Usage":
        # Upstreams occasionally send null or junk counters
        i = input_tokens if isinstance(input_tokens, int) else 0
        o = output_tokens if isinstance(output_tokens, int) else 0
        return cls(input_tokens=i, output_tokens=o, total_tokens=total if isinstance(total, int) else i + o)


class DeltaEvent(BaseModel):
    """
    One unit of a normalized stream.

    ``delta`` carries a text fragment, ``done`` is the unique terminal event.
    The gateway adds ``error`` as the terminal event of a failed stream.
    """

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    kind: Literal["delta", "done", "error"]
    text: str = ""
    usage: Optional[Usage] = None
    error: Optional[Exception] = None

    @classmethod
    def fragment(cls, text: str) -> "DeltaEvent":
        return cls(kind="delta", text=text)

    @classmethod
    def terminal(cls, usage: Optional[Usage] = None) -> "DeltaEvent":
        return cls(kind="done", usage=usage)

    @classmethod
    def failure(cls, error: Exception) -> "DeltaEvent":
        return cls(kind="error", error=error)

    @property
    def is_terminal(self) -> bool:
        return self.kind != "delta"
