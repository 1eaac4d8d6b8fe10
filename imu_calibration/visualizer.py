import os
from typing import Optional

import matplotlib
matplotlib.use('Agg')  # Force non-interactive backend
import matplotlib.pyplot as plt
import numpy as np


def plot_residuals(residuals: np.ndarray, inliers: np.ndarray, threshold: Optional[float],
                   output_path: str, title: str = "Calibration residuals") -> str:
    """
    Saves a scatter plot of per-measurement residuals.
    Inliers are drawn in blue, outliers in red, threshold as a dashed line.
    """
    residuals = np.asarray(residuals, dtype=np.float64)
    inliers = np.asarray(inliers, dtype=bool)
    index = np.arange(len(residuals))

    fig, ax = plt.subplots(figsize=(10, 4))
    ax.scatter(index[inliers], residuals[inliers], s=12, c='tab:blue',
               label=f"Inliers ({np.count_nonzero(inliers)})")
    ax.scatter(index[~inliers], residuals[~inliers], s=12, c='tab:red',
               label=f"Outliers ({np.count_nonzero(~inliers)})")
    if threshold is not None:
        ax.axhline(threshold, color='k', linestyle='--', linewidth=1, label=f"Threshold {threshold:g}")
    if np.all(residuals[np.isfinite(residuals)] > 0):
        ax.set_yscale('log')
    ax.set_title(title)
    ax.set_xlabel("Measurement")
    ax.set_ylabel("Residual")
    ax.legend()
    ax.grid(True, alpha=0.3)

    out_dir = os.path.dirname(output_path)
    if out_dir:
        os.makedirs(out_dir, exist_ok=True)
    fig.tight_layout()
    fig.savefig(output_path)
    plt.close(fig)
    return output_path
