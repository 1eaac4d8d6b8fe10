"""
Attitude integration of gyroscope sequences.

Quaternions are (w, x, y, z) arrays. Every helper broadcasts over leading
dimensions, so (4,) and (N, 4) inputs are both accepted.
"""

import numpy as np

# Below this rotation angle sin(theta/2)/theta is replaced by its Taylor series
SMALL_ANGLE = 1e-8

IDENTITY = np.array([1.0, 0.0, 0.0, 0.0])


def quaternion_multiply(p: np.ndarray, q: np.ndarray) -> np.ndarray:
    """Hamilton product p * q."""
    pw, px, py, pz = np.moveaxis(np.asarray(p, dtype=np.float64), -1, 0)
    qw, qx, qy, qz = np.moveaxis(np.asarray(q, dtype=np.float64), -1, 0)
    return np.stack([
        pw * qw - px * qx - py * qy - pz * qz,
        pw * qx + px * qw + py * qz - pz * qy,
        pw * qy - px * qz + py * qw + pz * qx,
        pw * qz + px * qy - py * qx + pz * qw,
    ], axis=-1)


def quaternion_conjugate(q: np.ndarray) -> np.ndarray:
    q = np.asarray(q, dtype=np.float64)
    return q * np.array([1.0, -1.0, -1.0, -1.0])


def rotate_vector(q: np.ndarray, v: np.ndarray) -> np.ndarray:
    """Rotates v by the unit quaternion q (q * v * q^-1)."""
    q = np.asarray(q, dtype=np.float64)
    v = np.asarray(v, dtype=np.float64)
    w = q[..., :1]
    u = q[..., 1:]
    t = 2.0 * np.cross(u, v)
    return v + w * t + np.cross(u, t)


def rotation_increments(timestamps: np.ndarray, angular_rates: np.ndarray) -> np.ndarray:
    """
    Returns the (N-1, 4) body frame increments between consecutive samples.

    Each increment is the exact exponential of the mean angular rate of the
    pair over the elapsed time:
        dq = [cos(theta/2), sin(theta/2) * axis],  theta = |w_mean| * dt
    """
    dt = np.diff(timestamps)
    mean_rates = 0.5 * (angular_rates[:-1] + angular_rates[1:])
    rotation_vectors = mean_rates * dt[:, None]
    theta = np.linalg.norm(rotation_vectors, axis=1)

    half = 0.5 * theta
    small = theta < SMALL_ANGLE
    # sin(theta/2)/theta
    k = np.empty_like(theta)
    k[small] = 0.5 - theta[small] ** 2 / 48.0
    k[~small] = np.sin(half[~small]) / theta[~small]

    increments = np.empty((len(dt), 4))
    increments[:, 0] = np.cos(half)
    increments[:, 1:] = rotation_vectors * k[:, None]
    return increments


def _ordered_product(quaternions: np.ndarray) -> np.ndarray:
    # Pairwise reduction q1*q2, q3*q4, ... keeps the sample order
    while len(quaternions) > 1:
        if len(quaternions) % 2:
            paired = quaternion_multiply(quaternions[:-1:2], quaternions[1::2])
            quaternions = np.concatenate([paired, quaternions[-1:]])
        else:
            quaternions = quaternion_multiply(quaternions[0::2], quaternions[1::2])
    return quaternions[0]


def integrate_sequence(timestamps: np.ndarray, angular_rates: np.ndarray) -> np.ndarray:
    """
    Integrates body angular rates from the first to the last sample.

    Starts at the identity attitude and composes every increment once, in
    sample order. Returns the normalized (w, x, y, z) rotation from the body
    frame at the first sample to the body frame at the last sample.
    """
    timestamps = np.asarray(timestamps, dtype=np.float64)
    angular_rates = np.asarray(angular_rates, dtype=np.float64)
    if len(timestamps) < 2:
        return IDENTITY.copy()
    q = _ordered_product(rotation_increments(timestamps, angular_rates))
    return q / np.linalg.norm(q)


def predict_after_versor(q: np.ndarray, before_versor: np.ndarray) -> np.ndarray:
    """Expresses the gravity versor measured before the motion in the final body frame."""
    before_versor = np.asarray(before_versor, dtype=np.float64)
    before_versor = before_versor / np.linalg.norm(before_versor, axis=-1, keepdims=True)
    return rotate_vector(quaternion_conjugate(q), before_versor)
