from __future__ import annotations

from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

Role = Literal["user", "assistant"]


class ChatMessageIn(BaseModel):
    role: Role
    content: str


class CreateThreadAction(BaseModel):
    action: Literal["createThread"]
    title: str = Field(default="New chat", max_length=200)

    @field_validator("title")
    @classmethod
    def _title(cls, v: str) -> str:
        return v.strip() or "New chat"


class AddMessageAction(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    action: Literal["addMessage"]
    thread_id: int = Field(alias="threadId", gt=0)
    role: Role
    content: str = Field(min_length=1)


class DeleteAllThreadsAction(BaseModel):
    action: Literal["deleteAllThreads"]


MutationRequest = Annotated[
    Union[CreateThreadAction, AddMessageAction, DeleteAllThreadsAction],
    Field(discriminator="action"),
]


class CompletionRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    thread_id: int = Field(alias="threadId", gt=0)
    messages: list[ChatMessageIn] = Field(min_length=1)
    model: str | None = None


class GuestCompletionRequest(BaseModel):
    messages: list[ChatMessageIn] = Field(min_length=1)
    model: str | None = None


class Thread(BaseModel):
    id: int
    title: str
    user_id: str
    created_at: str


class Message(BaseModel):
    id: int
    thread_id: int
    role: str
    content: str
    created_at: str


class ThreadResponse(BaseModel):
    thread: Thread


class MessageResponse(BaseModel):
    message: Message


class SuccessResponse(BaseModel):
    success: bool = True


class SendOtpRequest(BaseModel):
    email: str = Field(min_length=3, max_length=320, pattern=r"^[^@\s]+@[^@\s]+$")


class SignInRequest(BaseModel):
    email: str = Field(min_length=3, max_length=320)
    otp: str = Field(min_length=1, max_length=32)


class UserInfo(BaseModel):
    id: str
    email: str
    name: str = ""


class SessionInfo(BaseModel):
    expires_at: str


class SessionResponse(BaseModel):
    user: UserInfo
    session: SessionInfo | None = None
