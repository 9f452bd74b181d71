from ontology_engine.repositories.ontology_workflows import (
    InMemoryOntologyWorkflowsRepository,
    PostgresOntologyWorkflowsRepository,
)

__all__ = [
    "InMemoryOntologyWorkflowsRepository",
    "PostgresOntologyWorkflowsRepository",
]
