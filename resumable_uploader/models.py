"""Session and part records shared by the checkpoint store and the remote backends."""

from dataclasses import dataclass, field


class SessionNotFound(Exception):
    """The object store no longer knows the multipart session (finalized or expired)."""


class CheckpointCorruptError(ValueError):
    """A checkpoint record could not be parsed; its resume offset cannot be trusted."""


@dataclass(frozen=True)
class CompletedPart:
    integrity_token: str
    part_number: int
    size: int

    def to_line(self) -> str:
        return f"{self.integrity_token},{self.part_number},{self.size}\n"


@dataclass
class UploadSession:
    session_id: str
    bucket: str
    key: str
    parts: list[CompletedPart] = field(default_factory=list)

    @property
    def next_part_number(self) -> int:
        return len(self.parts) + 1

    @property
    def offset(self) -> int:
        return sum(p.size for p in self.parts)
