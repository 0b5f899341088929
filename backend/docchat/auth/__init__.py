from docchat.auth.dependencies import Conversations, CurrentUser, Documents, Processor
from docchat.auth.token import TokenPayload, create_access_token, get_current_user, verify_token

__all__ = [
    "TokenPayload", "create_access_token", "get_current_user", "verify_token",
    "Conversations", "CurrentUser", "Documents", "Processor",
]
