"""purgecert - retention enforcement and deletion certification.

Decides when records must be deleted, anonymized or archived under
versioned retention policies, executes the action once per eligible
record, and issues a signed, hash-chained Deletion Certificate for every
per-record outcome. Active legal holds are never bypassed.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
