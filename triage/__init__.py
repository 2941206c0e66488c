"""
Symptom assessment orchestration pipeline.

Drives a triage conversation with a reasoning assistant, turns a finished
assessment into structured clinical records, persists them and writes
their content hashes to an audit ledger.
"""

__version__ = "0.1.0"
