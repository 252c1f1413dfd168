"""Hash chain core — builder, hasher, append engine, verifier."""

from auditchain.chain.builder import RecordBuilder
from auditchain.chain.engine import AppendEngine
from auditchain.chain.hasher import ChainHasher
from auditchain.chain.locks import LocalChainLocks, RedisChainLocks
from auditchain.chain.policy import SensitiveDataPolicy
from auditchain.chain.verifier import ChainVerifier

__all__ = [
    "AppendEngine",
    "ChainHasher",
    "ChainVerifier",
    "LocalChainLocks",
    "RecordBuilder",
    "RedisChainLocks",
    "SensitiveDataPolicy",
]
