"""
Identifier generation for primary-key type changes.

Converting an integer key into a 16-byte binary identifier needs a fresh id
per row. Two strategies are available:

- ``random``: ``uuid4`` bytes, different on every run.
- ``deterministic``: ``uuid5(namespace, "<table>:<old key>")`` bytes, so the
  same database converted twice yields the same identifiers.
"""

import uuid
from typing import Any, Union

# Namespace used when the configuration does not provide one.
DEFAULT_NAMESPACE = uuid.UUID("6f1d3c2a-9b7e-5a41-8c0d-2e4f6a8b0c1d")

STRATEGIES = ("random", "deterministic")


class KeyGenerator:
    """Produces a new binary key for the row of ``table`` whose old key was ``old_key``."""

    strategy = "random"

    def generate(self, table: str, old_key: Any) -> bytes:
        return uuid.uuid4().bytes

    def __repr__(self):
        return f"{self.__class__.__name__}()"


class RandomKeyGenerator(KeyGenerator):
    pass


class DeterministicKeyGenerator(KeyGenerator):
    strategy = "deterministic"

    def __init__(self, namespace: Union[uuid.UUID, str] = DEFAULT_NAMESPACE):
        self.namespace = namespace if isinstance(namespace, uuid.UUID) else uuid.UUID(namespace)

    def generate(self, table: str, old_key: Any) -> bytes:
        return uuid.uuid5(self.namespace, f"{table}:{old_key}").bytes

    def __repr__(self):
        return f"DeterministicKeyGenerator(namespace={self.namespace})"


def get_key_generator(strategy: str = "random", namespace: Union[uuid.UUID, str, None] = None) -> KeyGenerator:
    """Build the generator for a configured strategy name."""
    if strategy == "random":
        return RandomKeyGenerator()
    if strategy == "deterministic":
        return DeterministicKeyGenerator(namespace or DEFAULT_NAMESPACE)
    raise ValueError(f"Unknown id strategy '{strategy}', expected one of {', '.join(STRATEGIES)}")
