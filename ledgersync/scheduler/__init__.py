"""Cron-driven recurring jobs."""

from .job_scheduler import JobScheduler, ScheduleDescriptor

__all__ = ["JobScheduler", "ScheduleDescriptor"]
