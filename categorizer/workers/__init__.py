"""Workers package: the categorization worker and the queue-driven worker pool."""

from .categorization_worker import CategorizationWorker  # noqa: F401
from .pool import WorkerPool  # noqa: F401
