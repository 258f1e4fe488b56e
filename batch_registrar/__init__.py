"""
Adaptive batch registration engine

Processes an ordered list of registration items against one session of a
flaky, session-stateful target system, classifying outcomes, retrying under
shared availability gating and remembering which locator strategies work.
"""

__version__ = "1.0.0"
