from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


class TextPart(BaseModel):
    """Text segment of a multi-part message."""
    type: Literal["text"] = "text"
    text: str


class ImageURL(BaseModel):
    url: str


class ImagePart(BaseModel):
    """Image segment; url is usually a data URL produced by viewport capture."""
    type: Literal["image_url"] = "image_url"
    image_url: ImageURL

    @classmethod
    def from_url(cls, url: str) -> "ImagePart":
        return cls(image_url=ImageURL(url=url))


ContentPart = Union[TextPart, ImagePart]


class ChatMessage(BaseModel):
    """One conversation turn; content is plain text or ordered parts."""
    role: Literal["system", "user", "assistant"]
    content: Union[str, List[ContentPart]]

    def has_image(self) -> bool:
        if isinstance(self.content, str):
            return False
        return any(isinstance(part, ImagePart) for part in self.content)

    def text(self) -> str:
        if isinstance(self.content, str):
            return self.content
        return "\n".join(part.text for part in self.content if isinstance(part, TextPart))


class ChatMeta(BaseModel):
    """Advisory note attached to a single chat call (e.g. image dropped)."""
    status_text: str


class ChatReply(BaseModel):
    """Reply text together with the meta of the call that produced it."""
    text: str = ""
    meta: Optional[ChatMeta] = None

    @property
    def status_text(self) -> str:
        return self.meta.status_text if self.meta else ""


class ProviderConfig(BaseModel):
    """Active provider configuration; persisted, replaced only by explicit save."""
    provider_kind: str
    base_url: str
    api_key: str = ""
    model_id: str = ""
    max_tokens: int = 4096


class LectureStep(BaseModel):
    """One narration step; immutable once generated."""
    model_config = ConfigDict(frozen=True)

    anchor_text: str
    narration_text: str
    fallback_scroll_percent: float = 0.0


class ApproximatePosition(BaseModel):
    x_percent: float = 0.0
    y_percent: float = 0.0
    width_percent: float = 0.0
    height_percent: float = 0.0


class LocatedElement(BaseModel):
    """Element located by the model from a screenshot."""
    description: str = ""
    selector: Optional[str] = None
    approximate_position: ApproximatePosition = Field(default_factory=ApproximatePosition)


class PendingAsk(BaseModel):
    """Question forwarded to the controller before it was listening."""
    question: str
    ts: float


class StoredMessage(BaseModel):
    """Persisted conversation message with optional advisory meta."""
    role: str
    content: str
    timestamp: float
    meta: Optional[Dict[str, Any]] = None


class ConversationSummary(BaseModel):
    """Lightweight conversation summary for listing."""
    session_id: str
    title: str
    updated_at: float


class HubRequestBody(BaseModel):
    """HTTP envelope for a hub request from an out-of-process context."""
    payload: Dict[str, Any] = Field(default_factory=dict)
    window_id: Optional[int] = None
    context_id: Optional[str] = None
