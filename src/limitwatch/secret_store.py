from typing import Protocol

import keyring
import keyring.errors

SERVICE_NAME = "com.limitswatcher"

# credential keys, "{provider}_{credential_type}"
COPILOT_TOKEN = "copilot_access_token"
CLAUDE_OAUTH = "claude_oauth_token"
CLAUDE_COOKIES = "claude_cookies"


def credential_key(provider: "str", credential_type: "str") -> "str":
    return f"{provider}_{credential_type}"


class SecretStore(Protocol):
    """
    SecretStore is a string key/value store for credentials.
    Deleting a missing key is not an error.
    """

    def set(self, key: "str", value: "str") -> "None": ...

    def get(self, key: "str") -> "str | None": ...

    def delete(self, key: "str") -> "None": ...


class KeyringSecretStore:
    """
    KeyringSecretStore keeps credentials in the OS keychain
    through the keyring library.
    """

    def __init__(self, service_name: "str" = SERVICE_NAME) -> "None":
        self._service = service_name

    def set(self, key: "str", value: "str") -> "None":
        keyring.set_password(self._service, key, value)

    def get(self, key: "str") -> "str | None":
        return keyring.get_password(self._service, key)

    def delete(self, key: "str") -> "None":
        try:
            keyring.delete_password(self._service, key)
        except keyring.errors.PasswordDeleteError:
            # already gone
            pass
