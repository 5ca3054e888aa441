"""Shared constants for dxgraph workflows."""

END = "END"

DEFAULT_MAX_ITERATIONS = 100
DEFAULT_MAX_SAME_NODE_VISITS = 3
DEFAULT_MAX_STEPS = 1000

SEVERITY_ORDER = ("blocker", "major", "minor", "info")

LOOP_BREAK_BRANCH_ID = "loop-break"

DEFAULT_CONFIG_FILE = "dxgraph.yaml"
