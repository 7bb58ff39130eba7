from chatrelay.services.auth_service import (
    verify_password, get_password_hash, create_access_token,
    decode_access_token, authenticate_user, create_user, count_users,
    get_user_by_id, get_user_by_email, secrets_match, verify_api_key,
)
from chatrelay.services.conversation_store import ConversationStore, PersistResult
from chatrelay.services.github_service import GitHubService
from chatrelay.services.llm_service import LLMService
from chatrelay.services.notifications import NotificationPipeline, NotifyOutcome

__all__ = [
    "verify_password",
    "get_password_hash",
    "create_access_token",
    "decode_access_token",
    "authenticate_user",
    "create_user",
    "count_users",
    "get_user_by_id",
    "get_user_by_email",
    "secrets_match",
    "verify_api_key",
    "ConversationStore",
    "PersistResult",
    "GitHubService",
    "LLMService",
    "NotificationPipeline",
    "NotifyOutcome",
]
