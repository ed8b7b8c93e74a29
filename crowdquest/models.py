import base64
import binascii
import math
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

# Coordinates returned by the vision model live in a 0..1000 space
BOX_SCALE = 1000

_DATA_URL_RE = re.compile(r"^data:(?P<mime>[\w/+.-]+);base64,(?P<data>.*)$", re.DOTALL)


class AppStatus(str, Enum):
    IDLE = "IDLE"
    GENERATING = "GENERATING"
    SUCCESS = "SUCCESS"
    ERROR = "ERROR"


@dataclass(frozen=True)
class UploadedPhoto:
    """A self-describing still image: mime type plus base64 payload."""

    mime_type: str
    data: str

    @property
    def data_url(self) -> str:
        return f"data:{self.mime_type};base64,{self.data}"

    def to_bytes(self) -> bytes:
        return base64.b64decode(self.data)

    @classmethod
    def from_data_url(cls, data_url: str) -> "UploadedPhoto":
        """Parse a ``data:<mime>;base64,<payload>`` string."""
        match = _DATA_URL_RE.match(data_url or "")
        if not match:
            raise ValueError("Not a base64 data URL")
        payload = match.group("data")
        try:
            base64.b64decode(payload, validate=True)
        except (binascii.Error, ValueError) as e:
            raise ValueError(f"Invalid base64 payload: {e}") from e
        return cls(mime_type=match.group("mime"), data=payload)


def is_data_url(reference: str) -> bool:
    return bool(reference) and reference.startswith("data:")


@dataclass(frozen=True)
class PageRequestSpec:
    target_photo: UploadedPhoto
    theme: str
    variation_index: int
    total_pages: int

    def __post_init__(self):
        if self.variation_index < 0:
            raise ValueError("variation_index must be >= 0")
        if self.total_pages < 1:
            raise ValueError("total_pages must be >= 1")


@dataclass(frozen=True)
class GeneratedPage:
    """One generated scene. ``image_url`` is either a remote URL or a data URL."""

    image_url: str
    quest_items: tuple = ()

    def to_dict(self) -> Dict[str, Any]:
        return {"imageUrl": self.image_url, "questItems": list(self.quest_items)}

    @classmethod
    def from_dict(cls, data: Any) -> "GeneratedPage":
        # Books saved by the flat variant store bare image URLs
        if isinstance(data, str):
            return cls(image_url=data)
        if not isinstance(data, dict) or not isinstance(data.get("imageUrl"), str):
            raise ValueError(f"Malformed page record: {data!r}")
        items = data.get("questItems") or []
        return cls(image_url=data["imageUrl"], quest_items=tuple(str(item) for item in items))


@dataclass(frozen=True)
class NormalizedBox:
    """Bounding region in the 0..1000 normalized space (top, left, bottom, right)."""

    top: float
    left: float
    bottom: float
    right: float

    def __post_init__(self):
        values = (self.top, self.left, self.bottom, self.right)
        for value in values:
            if isinstance(value, bool) or not isinstance(value, (int, float)) or math.isnan(value):
                raise ValueError(f"Box coordinate is not a number: {value!r}")
            if not 0 <= value <= BOX_SCALE:
                raise ValueError(f"Box coordinate {value} outside 0..{BOX_SCALE}")
        if self.top > self.bottom:
            raise ValueError(f"Box top {self.top} is below bottom {self.bottom}")
        if self.left > self.right:
            raise ValueError(f"Box left {self.left} is right of right {self.right}")

    @classmethod
    def from_sequence(cls, values: Sequence[Any]) -> "NormalizedBox":
        if isinstance(values, (str, bytes)) or len(values) != 4:
            raise ValueError(f"Expected 4 box coordinates, got {values!r}")
        return cls(*values)

    def as_tuple(self) -> tuple:
        return (self.top, self.left, self.bottom, self.right)

    def to_percentages(self) -> Dict[str, float]:
        """Overlay geometry in percent of the displayed image (value / 10)."""
        unit = BOX_SCALE / 100
        return {
            "top": self.top / unit,
            "left": self.left / unit,
            "width": (self.right - self.left) / unit,
            "height": (self.bottom - self.top) / unit,
        }


@dataclass(frozen=True)
class SavedBook:
    id: str
    title: str
    pages: tuple
    target_image: Optional[str]
    created_at: int

    @property
    def target_photo(self) -> Optional[UploadedPhoto]:
        if not self.target_image:
            return None
        return UploadedPhoto.from_data_url(self.target_image)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "pages": [page.to_dict() for page in self.pages],
            "targetImage": self.target_image,
            "createdAt": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SavedBook":
        if not isinstance(data, dict):
            raise ValueError(f"Malformed book record: {data!r}")
        raw_pages = data.get("pages")
        if raw_pages is None:
            raw_pages = data.get("images", [])
        return cls(
            id=str(data["id"]),
            title=str(data.get("title", "")),
            pages=tuple(GeneratedPage.from_dict(page) for page in raw_pages),
            target_image=data.get("targetImage"),
            created_at=int(data["createdAt"]),
        )


@dataclass
class GenerationRun:
    """Working state of the orchestrator, as exposed to a presentation layer."""

    status: AppStatus = AppStatus.IDLE
    theme: str = ""
    pages: List[GeneratedPage] = field(default_factory=list)
    total_pages: int = 0
    error_message: Optional[str] = None
    loading_message: Optional[str] = None

    @property
    def pages_completed(self) -> int:
        return len(self.pages)

    @property
    def progress_percentage(self) -> int:
        if self.total_pages <= 0:
            return 0
        # Half-up rounding
        return int(math.floor(self.pages_completed * 100 / self.total_pages + 0.5))

    @property
    def current_label(self) -> Optional[str]:
        if self.status is AppStatus.GENERATING:
            return f"Rendering Page {self.pages_completed + 1}..."
        return None

    def snapshot(self) -> "GenerationRun":
        """Copy that later page appends will not mutate."""
        return GenerationRun(
            status=self.status,
            theme=self.theme,
            pages=list(self.pages),
            total_pages=self.total_pages,
            error_message=self.error_message,
            loading_message=self.loading_message,
        )

