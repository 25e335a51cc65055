"""
Exceptions raised by the rubric grading engine.
"""


class RubricGraderError(Exception):
    """Base class for all rubric grader errors."""


class InvalidCommitError(RubricGraderError):
    """A unit answer was committed without a student name or an answer."""


class SessionStateError(RubricGraderError):
    """A persisted grading session cannot be applied to the given rubric."""


class PrivacyKeyMissingError(RubricGraderError):
    """Encryption was requested but no privacy key is available."""


class RecordStoreError(RubricGraderError):
    """The remote record store rejected or failed a request."""


class RubricNotFoundError(RubricGraderError):
    """No rubric is stored under the requested id."""
