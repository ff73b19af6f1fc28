class QuantizeError(Exception):
    """Base class for every failure that aborts a quantization run.

    ``run`` is set to the failed ``QuantizationRun`` once the error has
    passed through the orchestrator.
    """

    run = None


class InputError(QuantizeError, ValueError):
    """Bad user input: unreadable image or palette, empty palette, bad K."""


class InvalidParameterError(InputError):
    pass


class ImageIOError(InputError):
    """Raised when an image cannot be decoded or encoded."""


class AcceleratorError(QuantizeError, RuntimeError):
    """Fatal accelerator misconfiguration or failure. Never retried."""


class DeviceNotFoundError(AcceleratorError):
    pass


class KernelBuildError(AcceleratorError):
    """Kernel compilation failed. The compiler diagnostic is kept verbatim."""

    def __init__(self, kernel_name: str, diagnostic: str):
        self.kernel_name = kernel_name
        self.diagnostic = diagnostic
        super().__init__(f"Failed to build kernel '{kernel_name}':\n{diagnostic}")


class DispatchError(AcceleratorError):
    pass
