from dataclasses import dataclass, field
from typing import Optional


@dataclass
class StubVisionClient:
    """Returns a canned model response and records what it was shown."""

    response_text: str = "{}"
    error: Optional[Exception] = None
    calls: list[tuple[bytes, str]] = field(default_factory=list)

    def describe_image(self, image_bytes: bytes, media_type: str) -> str:
        self.calls.append((image_bytes, media_type))
        if self.error:
            raise self.error
        return self.response_text
