from __future__ import annotations


class RankingError(Exception):
    """Base class for failures raised while importing round rankings."""


class ValidationError(RankingError, ValueError):
    """The import request is missing required input (e.g. no target round)."""


class EmptyFileError(RankingError, ValueError):
    """The uploaded sheet contains no rows at all."""


class NoDataRowsError(RankingError, ValueError):
    """The uploaded sheet has a header row but no data rows."""


class DecodeError(RankingError, ValueError):
    """The uploaded content could not be decoded as a workbook or CSV."""


class PersistenceError(RankingError, RuntimeError):
    """A storage call failed while replacing a round's rankings.

    ``stage`` names the step that failed (``snapshot``, ``delete`` or
    ``insert``). ``restored`` is only meaningful for ``insert`` failures and
    reports whether the round's previous records were put back.
    """

    def __init__(self, message: str, *, stage: str, restored: bool = False) -> None:
        super().__init__(message)
        self.stage = stage
        self.restored = restored
