"""ORM models. Import every module here so Base.metadata sees all tables."""

from lecturenotes.models.account import Account, SubscriptionEventRecord  # noqa: F401
from lecturenotes.models.job import Job, JobArtifact, JobStageEvent  # noqa: F401
from lecturenotes.models.usage import UsageCommit, UsagePeriod  # noqa: F401
