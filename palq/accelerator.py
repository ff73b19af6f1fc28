import os
from typing import Dict, List, Optional

import numpy as np
import typer
from numba.core.errors import NumbaError

from palq.errors import AcceleratorError, DeviceNotFoundError, DispatchError, KernelBuildError
from palq.kernels import ASSIGN_LABELS, MAP_PALETTE, HostBackend

DEVICE_CHOICES = ("auto", "cuda", "cpu")

_PALQUANT_DEVICE_ENV = os.environ.get("PALQUANT_DEVICE", "auto").lower()
_PALQUANT_CUDA_DEVICE_ENV = os.environ.get("PALQUANT_CUDA_DEVICE", "0")

READ_ONLY = "read_only"
WRITE_ONLY = "write_only"
READ_WRITE = "read_write"
_ACCESS_MODES = (READ_ONLY, WRITE_ONLY, READ_WRITE)


class DeviceBuffer:
    """A host array paired with its device-resident mirror.

    The host array is authoritative. The device copy is only refreshed by
    ``publish()`` and only copied back by ``fetch()``; nothing else moves
    data between the two.
    """

    def __init__(self, session: "AcceleratorSession", host: np.ndarray, access: str, constant: bool = False):
        if access not in _ACCESS_MODES:
            raise ValueError(f"Unknown buffer access mode '{access}'.")
        self.session = session
        self.host = host
        self.access = access
        self.constant = constant
        self.published = False
        self.device = None

    @property
    def released(self) -> bool:
        return self.device is None and self.published

    def publish(self) -> "DeviceBuffer":
        """Copy the host array to the device, replacing the cached copy."""
        if self.constant and self.published:
            raise AcceleratorError("Constant device buffer cannot be written after its initial upload.")
        backend = self.session.backend
        if self.device is None:
            self.device = backend.to_device(self.host)
        else:
            backend.upload(self.device, self.host)
        self.published = True
        return self

    def allocate(self) -> "DeviceBuffer":
        """Reserve device memory for a kernel output without uploading."""
        if self.device is None:
            self.device = self.session.backend.allocate(self.host)
        self.published = True
        return self

    def fetch(self) -> np.ndarray:
        """Copy the device copy back into the host array and return it."""
        if self.device is None:
            raise AcceleratorError("Device buffer has no device-side storage to read back.")
        if self.access == READ_ONLY:
            raise AcceleratorError("Read-only device buffers are never read back.")
        self.session.backend.download(self.device, self.host)
        return self.host

    def release(self) -> None:
        self.device = None


class AcceleratorSession:
    """One compute device, its two compiled kernels, and its buffers.

    Created once per process and handed to the clustering and mapping
    engines. Every ``dispatch`` is followed by a completion barrier, so
    results may be read back as soon as it returns.
    """

    def __init__(self, device: Optional[str] = None, device_index: Optional[int] = None, verbose: bool = True):
        requested = (device or _PALQUANT_DEVICE_ENV).lower()
        if requested not in DEVICE_CHOICES:
            raise AcceleratorError(f"Unknown device '{requested}'. Expected one of: {', '.join(DEVICE_CHOICES)}.")
        if device_index is None:
            try:
                device_index = int(_PALQUANT_CUDA_DEVICE_ENV)
            except ValueError:
                raise AcceleratorError(f"PALQUANT_CUDA_DEVICE must be an integer, got '{_PALQUANT_CUDA_DEVICE_ENV}'.")
        self.verbose = verbose
        self.backend = self._open_backend(requested, device_index)
        self.kernels: Dict[str, object] = {}
        self._buffers: List[DeviceBuffer] = []
        self._image_buffers: Dict[int, DeviceBuffer] = {}
        self.dispatch_count = 0
        self._build_kernels()
        if self.verbose:
            typer.echo(f"Using compute device: {self.backend.name}")

    def _open_backend(self, requested: str, device_index: int):
        if requested == "cpu":
            return HostBackend()
        try:
            from palq import cuda_kernels
        except ImportError as e:
            if requested == "cuda":
                raise DeviceNotFoundError(f"CUDA support is not available: {e}")
            if self.verbose:
                typer.echo("numba CUDA support not importable, using the host CPU device.")
            return HostBackend()
        count = cuda_kernels.device_count()
        if count == 0:
            if requested == "cuda":
                raise DeviceNotFoundError("No CUDA devices found.")
            if self.verbose:
                typer.echo("No CUDA device found, using the host CPU device.")
            return HostBackend()
        if not 0 <= device_index < count:
            raise DeviceNotFoundError(f"CUDA device index {device_index} out of range ({count} device(s) found).")
        try:
            return cuda_kernels.CudaBackend(device_index)
        except cuda_kernels.CudaBackend.dispatch_errors as e:
            raise DeviceNotFoundError(f"Could not open CUDA device {device_index}: {e}")

    def _build_kernels(self) -> None:
        for name in (ASSIGN_LABELS, MAP_PALETTE):
            try:
                self.kernels[name] = self.backend.build(name)
            except NumbaError as e:
                raise KernelBuildError(name, str(e))

    @property
    def kind(self) -> str:
        return self.backend.kind

    def buffer(self, host: np.ndarray, access: str = READ_WRITE, constant: bool = False) -> DeviceBuffer:
        buf = DeviceBuffer(self, host, access, constant=constant)
        self._buffers.append(buf)
        return buf

    def image_buffer(self, pixels: np.ndarray) -> DeviceBuffer:
        """Constant device buffer for ``pixels``, uploaded once and then reused.

        Asking again for the same array returns the same buffer, so the
        clustering and mapping phases share a single upload.
        """
        if self.has_image_buffer(pixels):
            return self._image_buffers[id(pixels)]
        buf = self.buffer(pixels, READ_ONLY, constant=True).publish()
        self._image_buffers[id(pixels)] = buf
        return buf

    def has_image_buffer(self, pixels: np.ndarray) -> bool:
        buf = self._image_buffers.get(id(pixels))
        return buf is not None and buf.host is pixels and buf.device is not None

    def release_image(self, pixels: np.ndarray) -> None:
        """Drop the cached image buffer for ``pixels``, if one was uploaded."""
        buf = self._image_buffers.get(id(pixels))
        if buf is not None and buf.host is pixels:
            self.release(buf)

    def release(self, *buffers: DeviceBuffer) -> None:
        for buf in buffers:
            buf.release()
            if buf in self._buffers:
                self._buffers.remove(buf)
            for key, cached in list(self._image_buffers.items()):
                if cached is buf:
                    del self._image_buffers[key]

    def dispatch(self, kernel_name: str, n: int, *buffers: DeviceBuffer) -> None:
        """Run ``kernel_name`` once per pixel over ``n`` pixels, then wait."""
        kernel = self.kernels.get(kernel_name)
        if kernel is None:
            raise DispatchError(f"Unknown kernel '{kernel_name}'.")
        args = []
        for buf in buffers:
            if buf.device is None:
                raise DispatchError(f"Kernel '{kernel_name}' given a buffer with no device storage.")
            args.append(buf.device)
        try:
            self.backend.launch(kernel, n, args)
            self.synchronize()
        except self.backend.dispatch_errors as e:
            raise DispatchError(f"Dispatch of '{kernel_name}' over {n} pixels failed: {e}")
        self.dispatch_count += 1

    def synchronize(self) -> None:
        self.backend.synchronize()

    def close(self) -> None:
        for buf in self._buffers:
            buf.release()
        self._buffers.clear()
        self._image_buffers.clear()
        self.kernels.clear()

    def __enter__(self) -> "AcceleratorSession":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
