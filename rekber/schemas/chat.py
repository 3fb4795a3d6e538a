from pydantic import BaseModel


class ChatMessageResponse(BaseModel):
    id: int
    room_id: str
    room_type: str
    sender_id: int | None = None
    sender_username: str | None = None
    sender_role: str | None = None
    message: str
    message_type: str
    attachment_url: str | None = None
    created_at: str | None = None


class ChatHistoryResponse(BaseModel):
    room_id: str
    room_type: str
    total: int
    page: int
    page_size: int
    messages: list[ChatMessageResponse]
