"""
Billing Scheduler - Package Entry Point
"""

from .orchestrator import BillingScheduler, VALIDATION_JOB_ID, RENEWAL_JOB_ID

__all__ = ["BillingScheduler", "VALIDATION_JOB_ID", "RENEWAL_JOB_ID"]
