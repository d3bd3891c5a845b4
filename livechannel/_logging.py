# =============================================================================
# livechannel -- Package Logger
# =============================================================================

import logging

logger = logging.getLogger("livechannel")
logger.addHandler(logging.NullHandler())
