import pytest
from prometheus_client import CollectorRegistry


class MemorySecretStore:
    """
    in-memory SecretStore for tests.
    """

    def __init__(self) -> "None":
        self.values: "dict[str, str]" = {}

    def set(self, key: "str", value: "str") -> "None":
        self.values[key] = value

    def get(self, key: "str") -> "str | None":
        return self.values.get(key)

    def delete(self, key: "str") -> "None":
        self.values.pop(key, None)


@pytest.fixture()
def registry() -> "CollectorRegistry":
    """
    fresh Prometheus registry to avoid cross-test state.
    """
    return CollectorRegistry()


@pytest.fixture()
def secret_store() -> "MemorySecretStore":
    return MemorySecretStore()
