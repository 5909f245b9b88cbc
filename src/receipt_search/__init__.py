"""
Receipt Precision Search → Confidence Scoring → Automatic Attachment

A queue-driven pipeline that looks for receipts of transactions still
missing one, runs an ordered list of matching strategies per transaction
and attaches the best candidate that clears the acceptance threshold.
"""

__version__ = "0.1.0"
