"""
Error taxonomy for the burst merge engine.

Setup errors are fatal for a context, dispatch errors only fail the current
merge call, frame contract errors are raised before anything is dispatched.
"""

from typing import Optional


class BurstError(Exception):
    """Base class for all burst processing errors"""

    def __init__(self, message: str, original_error: Optional[BaseException] = None):
        super().__init__(message)
        self.original_error = original_error


class SetupError(BurstError):
    """No usable device, or a kernel/parameter block mismatch at start-up"""
    pass


class DispatchError(BurstError):
    """A kernel submission or readback failed; the context stays usable"""
    pass


class ConfigError(BurstError):
    """Invalid merge configuration"""
    pass


class FrameContractError(BurstError):
    """The burst handed to merge() breaks the input contract"""

    def __init__(self, message: str, frame_index: Optional[int] = None):
        if frame_index is not None:
            message = f"frame {frame_index}: {message}"
        super().__init__(message)
        self.frame_index = frame_index
