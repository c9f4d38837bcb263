"""
Event Reconciliation Engine for the match logger.
Optimistic submission, acknowledgement merging, duplicate detection and
(cascading) undo over a canonically ordered timeline.
"""
