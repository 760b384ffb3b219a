"""
Grade Pipeline: Automated Assignment Grading

Fetches student submissions from version control, runs visible and hidden
pytest suites against them in a sandbox, scores them for similarity against
previously graded work, and writes deterministic grade reports.
"""

__version__ = "0.2.0"
