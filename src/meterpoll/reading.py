"""Transport-neutral poll result dataclasses.

One ``PollResult`` is produced per meter per cycle and handed to
observers; it is not touched again after being emitted.

Example:
    >>> from meterpoll.reading import PollResult
    >>> r = PollResult(address=75)
    >>> r.parameters["u1"] = 230.0
    >>> r.add_error(0x21, "failed after 3 attempts: response timeout")
    >>> r.ok
    False
"""

from dataclasses import dataclass, field


@dataclass(frozen=True)
class PollError:
    """A failure recorded while polling a meter.

    ``context`` is the parameter code (int or OBIS string), or one of
    ``"energy"``, ``"close"``, ``"connection"``.
    """

    context: int | str
    message: str


@dataclass
class PollResult:
    """Decoded values and recorded failures for one meter."""

    address: int
    parameters: dict[str, float | None] = field(default_factory=dict)
    errors: list[PollError] = field(default_factory=list)

    def add_error(self, context: int | str, message: str) -> None:
        """Append a failure record."""
        self.errors.append(PollError(context, message))

    @property
    def ok(self) -> bool:
        """True when nothing failed for this meter."""
        return not self.errors


def fmt_context(context: int | str) -> str:
    """Format an error context for display.

    Example:
        >>> fmt_context(0x21)
        '0x21'
        >>> fmt_context("energy")
        'energy'
    """
    if isinstance(context, int):
        return f"0x{context:02X}"
    return context


def fmt_value(value: float | None) -> str:
    """Format a decoded value for display.

    Example:
        >>> fmt_value(230.5)
        '230.5'
        >>> fmt_value(None)
        '--'
    """
    return f"{value:g}" if value is not None else "--"
