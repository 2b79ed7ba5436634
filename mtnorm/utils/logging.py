import logging

logger = logging.getLogger("mtnorm")
logger.setLevel(level=logging.INFO)
