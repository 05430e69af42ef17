import logging

# Create a logger
logger = logging.getLogger("cumulus")


# "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
def setup_logger(verbose: bool = False, format: str = "%(message)s") -> None:
    # Set the logging level based on the verbose flag
    logger.setLevel(logging.DEBUG if verbose else logging.INFO)

    for handler in list(logger.handlers):
        logger.removeHandler(handler)

    ch = logging.StreamHandler()
    ch.setLevel(logging.DEBUG if verbose else logging.INFO)

    formatter = logging.Formatter(format)
    ch.setFormatter(formatter)

    logger.addHandler(ch)


setup_logger()
