from __future__ import annotations


class PerturbZoomError(Exception):
    pass


class OrbitIndexOutOfRange(PerturbZoomError, IndexError):
    def __init__(self, iteration: int, length: int):
        super().__init__(f"Orbit iteration {iteration} requested but only {length} values exist; extend first.")
        self.iteration = iteration
        self.length = length


class EscapeRadiusExceeded(PerturbZoomError):
    """Normal termination of an orbit, not a failure."""

    def __init__(self, iteration: int):
        super().__init__(f"Orbit escaped at iteration {iteration}")
        self.iteration = iteration


class OrbitExtensionError(PerturbZoomError):
    pass


class PrecisionExhaustedError(OrbitExtensionError):
    def __init__(self, required_digits: int, max_digits: int):
        super().__init__(f"Reference orbit needs {required_digits} digits but max_precision_digits={max_digits}")
        self.required_digits = required_digits
        self.max_digits = max_digits


class GlitchUnrecoverable(PerturbZoomError):
    def __init__(self, pixels, iteration: int):
        super().__init__(f"Rebasing did not restore a bounded delta for {len(pixels)} pixel(s) at iteration {iteration}")
        self.pixels = pixels
        self.iteration = iteration


class SchedulerNoSafeSuspensionPoint(PerturbZoomError):
    def __init__(self, board_id: int):
        super().__init__(f"Board {board_id} is mid-step; migration deferred")
        self.board_id = board_id


class BackendCapabilityExceeded(PerturbZoomError):
    pass
