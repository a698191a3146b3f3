from keeper.auth.session_validator import (
    OrderPayload,
    SessionAuthValidator,
    ValidationResult,
    order_message_hash,
    recover_signer,
    session_auth_hash,
)

__all__ = [
    "OrderPayload",
    "SessionAuthValidator",
    "ValidationResult",
    "order_message_hash",
    "recover_signer",
    "session_auth_hash",
]
