"""
Capture pipeline: job queue, worker pool, capture engine adapter and
progress aggregation for screenshot jobs and collections.
"""
