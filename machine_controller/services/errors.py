class ReconcileError(RuntimeError):
    pass


class VMNotFoundError(ReconcileError):
    pass


class VMNotInitializedError(ReconcileError):
    pass


class VMNotCreatedError(ReconcileError):
    pass


class ResourceExhaustedError(ReconcileError):
    """Capacity ran out (ids, addresses, node memory); not a transient fault."""


class NoVMIDInRangeFreeError(ResourceExhaustedError):
    def __init__(self, start: int, end: int):
        self.start = start
        self.end = end
        super().__init__(f"no free vmid found in vmid range {start}-{end}")
