def require_env(name: str) -> str:
    """Return the value of a mandatory environment variable or raise RuntimeError.
    WHY: Fail-fast when a worker starts without critical configuration.
    """
    import os
    value = os.getenv(name)
    if not value:
        raise RuntimeError(f"Missing required environment variable: {name}")
    return value


def load_env_file() -> bool:
    """Load variables from a local .env file without overriding the environment.

    WHAT:
        Reads .env (searched from the working directory upwards) into os.environ.
    WHY:
        Local runs of the worker pick up DATABASE_URL/REDIS_URL from .env while
        deployed workers keep their injected variables.

    Returns:
        True if a .env file was found and loaded.
    """
    import logging
    from dotenv import find_dotenv, load_dotenv

    logger = logging.getLogger(__name__)

    path = find_dotenv(usecwd=True)
    loaded = bool(path) and load_dotenv(path, override=False)

    if loaded:
        logger.info("Loaded local .env file %s (existing variables were NOT overwritten)", path)
    else:
        logger.debug("No local .env file found or loaded")
    return loaded
