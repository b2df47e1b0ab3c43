from __future__ import annotations

from dataclasses import dataclass

import numpy as np


@dataclass(frozen=True)
class BrownDistortion:
    """
    Brown-Conrady distortion on normalized camera coordinates (x=X/Z, y=Y/Z).

    Parameters follow common OpenCV naming:
      radial: k1, k2, k3
      tangential: p1, p2

    The radial-only camera models use the same map with the unused terms at zero.
    """

    k1: float = 0.0
    k2: float = 0.0
    p1: float = 0.0
    p2: float = 0.0
    k3: float = 0.0

    @staticmethod
    def from_coeffs(names: tuple[str, ...], values: np.ndarray) -> BrownDistortion:
        values = np.asarray(values, dtype=np.float64).reshape(-1)
        if len(names) != values.size:
            raise ValueError("distortion names and values must have the same length")
        return BrownDistortion(**{str(n): float(v) for n, v in zip(names, values.tolist())})

    def is_identity(self) -> bool:
        return all(abs(c) <= 1e-8 for c in (self.k1, self.k2, self.p1, self.p2, self.k3))

    def distort(self, x: np.ndarray, y: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
        x = np.asarray(x, dtype=np.float64)
        y = np.asarray(y, dtype=np.float64)
        r2 = x * x + y * y
        r4 = r2 * r2
        r6 = r4 * r2
        radial = 1.0 + self.k1 * r2 + self.k2 * r4 + self.k3 * r6
        x2 = x * x
        y2 = y * y
        xy = x * y
        x_tan = 2.0 * self.p1 * xy + self.p2 * (r2 + 2.0 * x2)
        y_tan = self.p1 * (r2 + 2.0 * y2) + 2.0 * self.p2 * xy
        xd = x * radial + x_tan
        yd = y * radial + y_tan
        return xd, yd

    def undistort(
        self, xd: np.ndarray, yd: np.ndarray, iterations: int = 100, eps: float = 1e-14
    ) -> tuple[np.ndarray, np.ndarray]:
        """
        Iterative inverse of distort() for small/moderate distortion.

        Fixed-point iteration, stopped early once every update is below `eps`.
        """
        xd = np.asarray(xd, dtype=np.float64)
        yd = np.asarray(yd, dtype=np.float64)
        x = xd.copy()
        y = yd.copy()
        if not any((self.k1, self.k2, self.p1, self.p2, self.k3)):
            return x, y
        for _ in range(int(iterations)):
            x_est, y_est = self.distort(x, y)
            dx = xd - x_est
            dy = yd - y_est
            x += dx
            y += dy
            if np.all(np.abs(dx) < eps) and np.all(np.abs(dy) < eps):
                break
        return x, y
