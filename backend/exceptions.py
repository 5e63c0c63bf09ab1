"""
promptvault error taxonomy.

Every exception raised out of the core derives from PromptVaultError so the
HTTP layer can map it to a status code without string matching.

None of these messages may carry a decrypted prompt, key material,
ciphertext, or a raw provider payload.
"""

from typing import List, Optional


class PromptVaultError(Exception):
    """Base exception for the prompt orchestration core."""
    pass


class EncryptionKeyMissing(PromptVaultError):
    """Raised at startup when no usable prompt encryption key is configured."""
    def __init__(self, message: str = None):
        super().__init__(
            message or "Prompt encryption key is not configured; refusing to start"
        )


class DecryptionFailure(PromptVaultError):
    """Raised when an authentication tag does not verify (wrong key, truncation, tampering)."""
    def __init__(self, message: str = None):
        super().__init__(message or "Decryption failed (invalid key or corrupted data)")


class NotFoundError(PromptVaultError):
    """Base for 404-class errors."""
    pass


class PromptNotFound(NotFoundError):
    def __init__(self, session_type: Optional[str] = None, prompt_id: Optional[str] = None):
        self.session_type = session_type
        self.prompt_id = prompt_id
        if prompt_id:
            message = f"Prompt not found: {prompt_id}"
        else:
            message = f"No active prompt found for session type: {session_type}"
        super().__init__(message)


class SessionNotFound(NotFoundError):
    def __init__(self, agent_id: str):
        self.agent_id = agent_id
        super().__init__(f"Session not found: {agent_id}")


class DatasetEntryNotFound(NotFoundError):
    def __init__(self, entry_id: str):
        self.entry_id = entry_id
        super().__init__(f"Dataset entry not found: {entry_id}")


class NoQualifyingData(NotFoundError):
    """Raised when an export filter matches no approved records."""
    def __init__(self, message: str = None):
        super().__init__(message or "No qualifying data found for export")


class UnauthorizedAccess(PromptVaultError):
    """Raised when a session is accessed by someone other than its owner."""
    def __init__(self, message: str = None):
        super().__init__(message or "Invalid agent session")


class SessionExpired(UnauthorizedAccess):
    def __init__(self, status: str = "expired"):
        self.status = status
        super().__init__(f"Session is {status}")


class ProviderUnavailable(PromptVaultError):
    """Raised when the provider gateway cannot produce a completion."""
    def __init__(self, message: str = None, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message or "AI provider unavailable")


class ValidationFailure(PromptVaultError):
    """Raised when structured model output does not satisfy its schema."""
    def __init__(self, errors: List[str]):
        self.errors = list(errors)
        super().__init__(f"Output validation failed: {len(self.errors)} error(s)")


class CacheDegraded(PromptVaultError):
    """Internal to ResponseCache: the circuit breaker is open. Never surfaced to callers."""
    pass


class InteractionNotFound(NotFoundError):
    def __init__(self, interaction_id: str):
        self.interaction_id = interaction_id
        super().__init__(f"Interaction not found: {interaction_id}")
