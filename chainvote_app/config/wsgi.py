import logging
import os

from django.core.wsgi import get_wsgi_application

os.environ.setdefault('DJANGO_SETTINGS_MODULE', 'config.settings')

application = get_wsgi_application()

logger = logging.getLogger(__name__)

try:
    from chainvote.startup import initialize_ledger_on_startup

    initialize_ledger_on_startup()
except Exception:
    logger.exception("Startup ledger initialization failed")
    raise
