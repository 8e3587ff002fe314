# camera/__init__.py – Simulated camera implementing the acquisition capability

from __future__ import annotations

from typing import Optional, Tuple

import numpy as np


class SimulatedCamera:
    """Photon-transfer camera simulator implementing the acquisition capability.

    Signal is ``dark_level + gain * Poisson(photon_rate * transmittance *
    exposure * vignette) + Normal(0, read_noise)``, clipped at full scale so
    replicate deviation collapses once pixels saturate.
    """

    def __init__(
        self,
        width: int = 64,
        height: int = 48,
        *,
        bit_depth: int = 12,
        dark_level: float = 100.0,
        gain: float = 1.0,
        read_noise: float = 2.0,
        photon_rate: float = 20.0,
        transmittance: float | np.ndarray = 1.0,
        seed: Optional[int] = None,
    ) -> None:
        self.width = width
        self.height = height
        self.bit_depth = bit_depth
        self.dark_level = float(dark_level)
        self.gain = float(gain)
        self.read_noise = float(read_noise)
        self.photon_rate = float(photon_rate)
        self.transmittance = transmittance
        self._rng = np.random.default_rng(seed)
        self._opened = False
        self._shutter_open = True
        self.captures: list[Tuple[float, int]] = []

    @property
    def full_scale(self) -> int:
        return (1 << self.bit_depth) - 1

    @property
    def shutter_open(self) -> bool:
        return self._shutter_open

    def open(self) -> bool:
        self._opened = True
        return True

    def close(self) -> None:
        self._opened = False

    def set_shutter(self, open_: bool) -> None:
        self._shutter_open = bool(open_)

    def wait_ready(self, timeout: float) -> bool:
        return self._opened

    def _illumination(self) -> np.ndarray:
        y, x = np.indices((self.height, self.width), dtype=np.float64)
        cy, cx = (self.height - 1) / 2.0, (self.width - 1) / 2.0
        r2 = ((y - cy) / max(cy, 1.0)) ** 2 + ((x - cx) / max(cx, 1.0)) ** 2
        return 1.0 - 0.1 * r2 / 2.0

    def capture_replicate_frames(
        self, exposure_ms: float, replicates: int
    ) -> np.ndarray:
        """Return ``(replicates, H, W)`` uint16 frames at ``exposure_ms``."""
        if not self._opened:
            raise RuntimeError("Camera not opened")
        self.captures.append((float(exposure_ms), int(replicates)))
        shape = (int(replicates), self.height, self.width)
        flux = self.photon_rate * float(exposure_ms) * self._illumination()
        flux = flux * np.asarray(self.transmittance, dtype=np.float64)
        if not self._shutter_open:
            flux = np.zeros_like(flux)
        electrons = self._rng.poisson(np.broadcast_to(flux, shape))
        signal = self.dark_level + self.gain * electrons
        signal = signal + self._rng.normal(0.0, self.read_noise, size=shape)
        return np.clip(np.rint(signal), 0, self.full_scale).astype(np.uint16)
