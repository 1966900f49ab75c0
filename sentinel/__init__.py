"""
SENTINEL - process telemetry and risk classification core

Package Structure:
- sysmon: telemetry store, hierarchy resolver, snapshot sources
- threat_detector: heuristics, AI client, classifier pipeline
- log_analysis: audit log and logging setup
- supervisor: command surface for a presentation layer
"""

__version__ = "1.0.4"
