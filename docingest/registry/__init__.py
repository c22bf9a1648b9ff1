from docingest.registry.base import DocumentRegistry, Submission
from docingest.registry.memory import InMemoryDocumentRegistry
from docingest.registry.sql import SqlDocumentRegistry

__all__ = [
    "DocumentRegistry", "Submission",
    "InMemoryDocumentRegistry", "SqlDocumentRegistry",
]
