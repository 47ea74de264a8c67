"""Domain exceptions raised by the service layer."""
from __future__ import annotations


class PulseError(Exception):
    """Base class for Pulse domain errors."""


class SubjectNotFound(PulseError):
    def __init__(self, subject_id: int):
        super().__init__(f"Subject {subject_id} not found")
        self.subject_id = subject_id


class ProfileIncomplete(PulseError):
    """The subject has no metric profile yet, so it cannot be scored."""
    def __init__(self, subject_id: int, missing_inputs: list[str] | None = None):
        super().__init__(f"Profile incomplete for subject {subject_id}")
        self.subject_id = subject_id
        self.missing_inputs = list(missing_inputs or [])


class ConnectorError(PulseError):
    """A source connector failed to pull or revoke."""
    def __init__(self, provider: str, message: str):
        super().__init__(f"{provider}: {message}")
        self.provider = provider


class PlaybookNotFound(PulseError):
    def __init__(self, slug: str):
        super().__init__(f"Playbook {slug!r} not found")
        self.slug = slug
