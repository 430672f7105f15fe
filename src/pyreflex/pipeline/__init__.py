"""
Pipeline module - ingestion path from raw delivery to PENDING executions.

This module contains the admission components:
- normalizer: raw payload to Event (EventNormalizer)
- dedup: exactly-once admission per dedup key (Deduplicator)
- resolver: Event to enabled, matching ActionLinks (LinkResolver)
- chain: ActionLinks to PENDING Executions (ReactionChainBuilder)
- mapping: trigger payload to reaction input (DataMapper)
- ingest: the Pipeline façade wiring them together

Every component returns an outcome value from pyreflex.pipeline.outcome.
"""

from pyreflex.pipeline.conditions import ConditionError, evaluate_condition
from pyreflex.pipeline.mapping import DataMapper, MappingError, PayloadMapper
from pyreflex.pipeline.outcome import (
    Accepted,
    AdmitOutcome,
    Duplicate,
    Ingested,
    IngestOutcome,
    MalformedInput,
    NoMatchingLink,
    Normalized,
    NormalizeOutcome,
    Resolved,
    ResolveOutcome,
    UnrecognizedPayload,
)
from pyreflex.pipeline.normalizer import EventNormalizer, canonical_json, content_hash
from pyreflex.pipeline.dedup import Deduplicator
from pyreflex.pipeline.resolver import LinkResolver
from pyreflex.pipeline.chain import CHAIN_RESULT_FIELD, Delivery, ReactionChainBuilder
from pyreflex.pipeline.ingest import Pipeline

__all__ = [
    # Façade
    "Pipeline",
    # Components
    "EventNormalizer",
    "Deduplicator",
    "LinkResolver",
    "ReactionChainBuilder",
    "Delivery",
    "CHAIN_RESULT_FIELD",
    "canonical_json",
    "content_hash",
    # Conditions and mapping
    "evaluate_condition",
    "ConditionError",
    "DataMapper",
    "PayloadMapper",
    "MappingError",
    # Outcomes
    "Normalized",
    "MalformedInput",
    "UnrecognizedPayload",
    "NormalizeOutcome",
    "Accepted",
    "Duplicate",
    "AdmitOutcome",
    "Resolved",
    "NoMatchingLink",
    "ResolveOutcome",
    "Ingested",
    "IngestOutcome",
]
