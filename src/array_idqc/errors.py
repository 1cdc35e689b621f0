"""Error types for identity QC runs."""

from dataclasses import dataclass

MAX_LISTED_IDENTIFIERS = 10


def format_identifiers(identifiers: tuple[str, ...] | list[str]) -> str:
    """Render identifiers for an error message, truncating long listings."""
    shown = ", ".join(str(i) for i in identifiers[:MAX_LISTED_IDENTIFIERS])
    remaining = len(identifiers) - MAX_LISTED_IDENTIFIERS
    if remaining > 0:
        shown = f"{shown} (+{remaining} more)"
    return shown


class ConfigurationError(ValueError):
    """Raised when a QC run cannot proceed with the given inputs or settings.

    The offending identifiers are kept on the exception so callers can
    report them without parsing the message.
    """

    def __init__(self, message: str, identifiers: tuple[str, ...] | list[str] = ()):
        self.identifiers = tuple(identifiers)
        if self.identifiers:
            message = f"{message}: {format_identifiers(self.identifiers)}"
        super().__init__(message)


class InputMismatchError(ConfigurationError):
    """Raised when sample or marker sets differ between inputs."""

    def __init__(
        self,
        kind: str,
        left_name: str,
        right_name: str,
        missing_from_right: tuple[str, ...] | list[str] = (),
        missing_from_left: tuple[str, ...] | list[str] = (),
    ):
        self.kind = kind
        self.missing_from_right = tuple(missing_from_right)
        self.missing_from_left = tuple(missing_from_left)

        parts = []
        if self.missing_from_right:
            parts.append(
                f"{len(self.missing_from_right)} {kind}(s) in {left_name} missing from "
                f"{right_name} [{format_identifiers(self.missing_from_right)}]"
            )
        if self.missing_from_left:
            parts.append(
                f"{len(self.missing_from_left)} {kind}(s) in {right_name} missing from "
                f"{left_name} [{format_identifiers(self.missing_from_left)}]"
            )
        message = f"{kind.capitalize()} mismatch between {left_name} and {right_name}: " + "; ".join(
            parts
        )
        ValueError.__init__(self, message)
        self.identifiers = self.missing_from_right + self.missing_from_left


class ConfigValidationError(ConfigurationError):
    """Raised when configuration validation fails."""

    pass


@dataclass(frozen=True)
class MarkerFitFailure:
    """A marker whose mixture fit was rejected and excluded from the run."""

    marker_id: str
    reason: str
    iterations: int = 0

    def to_row(self) -> dict[str, str | int]:
        return {
            "marker_id": self.marker_id,
            "reason": self.reason,
            "iterations": self.iterations,
        }


def check_same_ids(
    kind: str,
    left_name: str,
    left_ids,
    right_name: str,
    right_ids,
) -> None:
    """Raise InputMismatchError unless both ID collections hold the same IDs.

    Order is preserved in the reported listings so messages are stable.
    """
    right_set = set(right_ids)
    left_set = set(left_ids)
    missing_from_right = [i for i in left_ids if i not in right_set]
    missing_from_left = [i for i in right_ids if i not in left_set]
    if missing_from_right or missing_from_left:
        raise InputMismatchError(
            kind,
            left_name,
            right_name,
            missing_from_right=[str(i) for i in missing_from_right],
            missing_from_left=[str(i) for i in missing_from_left],
        )
