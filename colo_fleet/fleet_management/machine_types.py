"""Matching of node capabilities against requested ones.

The machine class of a colo node is currently just the number of GPUs it has. The scale is
deliberately coarse and is expected to be replaced by a richer descriptor. Callers must rely only
on the comparison being monotonic: a node that satisfies a request also satisfies every smaller
request.
"""

MachineClass = int

NO_GPU: MachineClass = 0


def compatible(offered: MachineClass, requested: MachineClass) -> bool:
    """Check if a node with the `offered` machine class can serve the `requested` one.

    >>> compatible(2, 1)
    True
    >>> compatible(0, 1)
    False
    """
    return offered >= requested
