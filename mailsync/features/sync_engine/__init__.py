"""
Sync engine feature package.

This vertical slice keeps every layer of the mailbox sync scheduler
co-located: domain models, pure policies, repositories, services, jobs and
the API router.
"""
