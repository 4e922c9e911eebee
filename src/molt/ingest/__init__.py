"""Ingestion — schema parsing, testimony admission and deferral of unresolved references."""

from molt.ingest.deferral import DeadLetter, DeferralQueue, DeferredRecord
from molt.ingest.ledger import TestimonyLedger
from molt.ingest.schema import parse_record

__all__ = ["DeadLetter", "DeferralQueue", "DeferredRecord", "TestimonyLedger", "parse_record"]
