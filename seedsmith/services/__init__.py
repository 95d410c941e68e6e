from seedsmith.services.column_mapper import ColumnMapper, MappingOptions
from seedsmith.services.constraint_validator import ConstraintValidator
from seedsmith.services.relationship_graph import RelationshipGrapher
from seedsmith.services.schema_introspector import SchemaIntrospector
from seedsmith.services.seeding_orchestrator import (
	FallbackExhaustedError,
	SeedingOrchestrator,
	build_orchestrator,
)
from seedsmith.services.workflow_builder import WorkflowBuilder
from seedsmith.services.workflow_executor import WorkflowExecutor

__all__ = [
	"ColumnMapper",
	"ConstraintValidator",
	"FallbackExhaustedError",
	"MappingOptions",
	"RelationshipGrapher",
	"SchemaIntrospector",
	"SeedingOrchestrator",
	"WorkflowBuilder",
	"WorkflowExecutor",
	"build_orchestrator",
]
