class GraphError(Exception):
    """Base class for errors raised by the family graph managers."""


class NotFoundError(GraphError):
    """A tree, group or merge run lookup missed."""


class PreconditionFailedError(GraphError):
    """The caller supplied input the operation cannot act on."""
