"""EduCore credit ledger, class registry and voucher service."""

__version__ = "1.0.0"
