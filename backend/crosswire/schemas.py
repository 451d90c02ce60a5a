import base64
import binascii
import re
from enum import Enum
from typing import Literal, Optional

from pydantic import BaseModel, Field, field_validator

DATA_URI_RE = re.compile(r"^data:(?P<mime>[\w.+-]+/[\w.+-]+);base64,(?P<payload>[A-Za-z0-9+/=\s]*)$")

NotificationKind = Literal["success", "error"]


class SessionState(str, Enum):
    UNAUTHENTICATED = "unauthenticated"
    LOADING = "loading"
    READY = "ready"


class User(BaseModel):
    uid: str
    email: Optional[str] = None
    email_verified: bool = False


class TextItem(BaseModel):
    id: str
    heading: str = ""
    content: str = ""
    timestamp: int = 0


class FileItem(BaseModel):
    name: str
    full_path: str
    url: str


class TextDraft(BaseModel):
    heading: str = ""
    content: str = ""


class AiResult(BaseModel):
    title: str
    content: str


class Notification(BaseModel):
    kind: NotificationKind
    title: str
    description: str = ""


# -------------------------
# AI flow contracts
# -------------------------
class SummarizeInput(BaseModel):
    text: str = Field(min_length=1, description="The text to summarize.")


class SummarizeOutput(BaseModel):
    summary: str = Field(description="A concise summary of the text.")


class ExtractMetadataInput(BaseModel):
    file_data_uri: str = Field(
        description="A file as a data URI: 'data:<mimetype>;base64,<encoded_data>'.",
    )

    @field_validator("file_data_uri")
    @classmethod
    def _check_data_uri(cls, v: str) -> str:
        m = DATA_URI_RE.match(v)
        if not m:
            raise ValueError("expected 'data:<mimetype>;base64,<encoded_data>'")
        try:
            base64.b64decode(m.group("payload"), validate=False)
        except binascii.Error as exc:
            raise ValueError(f"payload is not valid base64: {exc}") from exc
        return v


class ExtractMetadataOutput(BaseModel):
    metadata: str = Field(description="The extracted metadata from the file.")


# -------------------------
# Request / response bodies
# -------------------------
class Credentials(BaseModel):
    email: str
    password: str


class EmailBody(BaseModel):
    email: str = ""


class SignInResponse(BaseModel):
    uid: str
    email: Optional[str] = None
    id_token: str
    refresh_token: str
    expires_in: int = 3600


class NewText(BaseModel):
    heading: str = ""
    content: str = ""


class SummarizeRequest(BaseModel):
    text: str = ""


class ExtractRequest(BaseModel):
    full_path: str


class TextsResponse(BaseModel):
    state: SessionState
    items: list[TextItem] = Field(default_factory=list)


class FilesResponse(BaseModel):
    state: SessionState
    items: list[FileItem] = Field(default_factory=list)


class SessionResponse(BaseModel):
    state: SessionState
    email: Optional[str] = None
    texts: list[TextItem] = Field(default_factory=list)
    files: list[FileItem] = Field(default_factory=list)
    draft: TextDraft = Field(default_factory=TextDraft)
    pending_file: Optional[str] = None
    ai_result: Optional[AiResult] = None
    notifications: list[Notification] = Field(default_factory=list)


class ActionResponse(BaseModel):
    ok: bool
    notifications: list[Notification] = Field(default_factory=list)


class OkResponse(BaseModel):
    ok: bool = True
