import logging
import time

from django.conf import settings
from django.db import DatabaseError

from chainvote.exceptions import ChainVoteError, RpcUnreachable
from chainvote.ledger.deployment_store import DeploymentRecord
from chainvote.ledger.pending import reconcile_pending_chain_operations
from chainvote.ledger.registry import get_contract_registry

logger = logging.getLogger(__name__)

_ledger_initialized: bool = False

_STARTUP_MAX_ATTEMPTS: int = 3
_STARTUP_RETRY_BASE_DELAY_SECONDS: float = 5.0


def initialize_ledger_on_startup() -> DeploymentRecord | None:
    """Resolve pending chain writes, then make sure the voting contract is live.

    Retries up to _STARTUP_MAX_ATTEMPTS times with exponential backoff while the
    RPC endpoint is unreachable. Failures are logged at ERROR level and never
    raised: read paths keep working and the contract is resolved again on the
    first chain operation.
    """

    global _ledger_initialized
    if _ledger_initialized or not settings.LEDGER_ENSURE_DEPLOYED_ON_STARTUP:
        return None

    last_exc: Exception | None = None
    for attempt in range(1, _STARTUP_MAX_ATTEMPTS + 1):
        try:
            registry = get_contract_registry()
            reconcile_pending_chain_operations(client=registry.client)
            record = registry.ensure_deployed()
        except RpcUnreachable as exc:
            last_exc = exc
            if attempt < _STARTUP_MAX_ATTEMPTS:
                delay = _STARTUP_RETRY_BASE_DELAY_SECONDS * (2 ** (attempt - 1))
                logger.warning(
                    "Startup: ledger RPC unavailable (attempt %d/%d); retrying in %.0fs",
                    attempt,
                    _STARTUP_MAX_ATTEMPTS,
                    delay,
                    exc_info=True,
                )
                time.sleep(delay)
            continue
        except (ChainVoteError, DatabaseError) as exc:
            logger.error("Startup: ledger initialization failed: %s", exc, exc_info=True)
            return None

        _ledger_initialized = True
        logger.info("Startup: voting contract live at %s (network %s)", record.address, record.network_id)
        return record

    logger.error(
        "Startup: ledger RPC unavailable after %d attempts; skipping contract initialization."
        " Will retry on the first chain operation.",
        _STARTUP_MAX_ATTEMPTS,
        exc_info=last_exc,
    )
    return None
