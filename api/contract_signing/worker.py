import logging
from celery import Celery
from .config import REDIS_URL, WORKER_QUEUE
from .db import new_session
from . import lifecycle

logger = logging.getLogger(__name__)

cel = Celery("contracts", broker=REDIS_URL, backend=REDIS_URL)


@cel.task(name="regenerate_document", queue=WORKER_QUEUE)
def regenerate_document(contract_id: int):
    with new_session() as session:
        contract = lifecycle.regenerate_document(session, contract_id)
        return {"contract_id": contract.id, "document_url": contract.document_url, "sha256": contract.document_hash}


def finalize_document(session, contract_id: int, run_async: bool = False):
    """Re-render a contract after signing, inline or on the worker queue."""
    if run_async:
        regenerate_document.delay(contract_id)
        logger.info("Queued document regeneration for contract %s", contract_id)
        return None
    return lifecycle.regenerate_document(session, contract_id)
