"""
ThreatCat - keeps a ThreatDragon threat model in sync with its sources.

Reads Docker Compose files, data-flow YAML and existing ThreatDragon
documents, merges them into one model and writes the diagram back without
discarding manual edits.
"""

__version__ = "1.0.0"
