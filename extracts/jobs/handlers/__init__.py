"""Job handlers.

Handler contract:
    async def handler(job: Job, ctx: dict) -> dict
        - job: the claimed Job with its payload and attempt counter
        - ctx: worker_id, queue and any extra context given to the worker
        - Returns: result dict stored on the job

Processors are classes with injected collaborators; the worker process
registers instances of them with the WorkerRunner.
"""

from extracts.jobs.handlers.check_and_download import StatusCheckJobProcessor
from extracts.jobs.handlers.place_order import OrderJobProcessor

__all__ = ["OrderJobProcessor", "StatusCheckJobProcessor"]
