from passkeys.db.models.passkey_credential import PasskeyCredential

__all__ = ["PasskeyCredential"]
