"""Real-time chat channel.

Transport: WebSocket at /ws/chat?token=<access JWT>
Message format: {"event": <name>, "data": {...}}
"""

CHAT_WS_PATH = "/ws/chat"
