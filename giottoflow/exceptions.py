class GiottoflowError(Exception):
    """Base class for errors raised by giottoflow"""


class ConfigurationError(GiottoflowError, ValueError):
    """
    A stage was asked to run without the upstream attributes it needs
    (for example a spatial network, a clustering column or a layer), or
    with a parameter outside its accepted range.
    """


class IntegrityError(GiottoflowError):
    """Metadata, graphs or result tables reference identifiers that are not in the object"""
