from pydantic import BaseModel


class HealthResponse(BaseModel):
    status: str
    version: str
    users_count: int
    transactions_count: int
    open_disputes: int
    chat_connections: int
