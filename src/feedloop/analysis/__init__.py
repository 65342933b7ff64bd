"""Pattern analyzer - turns run history into ranked findings for the next run.

Modules:
    detectors     - pure detector functions over history documents
    architecture  - static fitness metrics of the source tree
    patterns      - orchestrator that reads inputs and builds the report
"""

from feedloop.analysis.patterns import analyze_patterns, summarize_patterns, write_pattern_report

__all__ = ["analyze_patterns", "summarize_patterns", "write_pattern_report"]
