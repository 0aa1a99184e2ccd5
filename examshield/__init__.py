"""
ExamShield - Proctored Exam Session Core

This package contains the state machine behind a proctored exam session:
- attempt_gate: attempt limits and the live/dead exam window
- scoring: deterministic MCQ scoring
- timers: per-question countdowns for coding questions
- violations: violation tally and warning escalation
- session: the session controller tying everything together
"""

__version__ = "1.0.0"
