import time


def now_ms() -> int:
    return int(time.time() * 1000)


class TranscriptAccumulator:
    """Merges final transcript chunks plus one pending interim into display text.

    Finals are kept in arrival order; no re-sorting by timestamp is done, so a
    source that delivers out of order produces an out-of-order transcript.
    """

    def __init__(self, chunks: list[dict] | None = None, interim: str | None = None):
        self.chunks: list[dict] = list(chunks or [])
        self.interim: str | None = interim or None

    @classmethod
    def from_record(cls, rec: dict) -> "TranscriptAccumulator":
        return cls(rec.get("transcript_chunks"), rec.get("current_interim"))

    @property
    def transcript(self) -> str:
        return " ".join(c["text"] for c in self.chunks if c["isFinal"])

    def add_final(self, text: str, timestamp: int | None = None) -> str:
        self.chunks.append({
            "text": text,
            "timestamp": timestamp if timestamp is not None else now_ms(),
            "isFinal": True,
        })
        self.interim = None
        return self.transcript

    def set_interim(self, text: str) -> str:
        self.interim = text
        return self.display_text()

    def display_text(self) -> str:
        finals = self.transcript
        if not self.interim:
            return finals
        return f"{finals} {self.interim}" if finals else self.interim

    def flush_interim_as_final(self, timestamp: int | None = None) -> bool:
        """Promote a pending interim to a final chunk. Returns True if there was one."""
        if not self.interim:
            self.interim = None
            return False
        self.add_final(self.interim, timestamp)
        return True
