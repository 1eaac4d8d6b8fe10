"""
IMU calibration from recorded CSV files.

Usage:
    imu-calibrate --accel frames.csv --gyro sequences.csv --method msac \
        --output calibration.json --plot plots/

The accelerometer is calibrated first (when a frames file is given) and its
result is used to correct the specific force of the gyroscope sequences.
"""

import argparse
import json
import logging
import os
from typing import Dict, Optional

import numpy as np

from imu_calibration.core.data_loader import DataLoader
from imu_calibration.progress import TqdmProgressObserver
from imu_calibration.solvers.base_solver import FitResult
from imu_calibration.solvers.robust_estimator import RobustMethod
from imu_calibration.solvers.robust_solver import RobustCalibratorConfig, create_robust_calibrator
from imu_calibration.visualizer import plot_residuals

logger = logging.getLogger(__name__)


def setup_logging(log_dir: Optional[str] = None, level: int = logging.INFO) -> Optional[str]:
    """Configure logging to console and, when log_dir is given, a file in it."""
    handlers = [logging.StreamHandler()]
    log_file = None
    if log_dir:
        os.makedirs(log_dir, exist_ok=True)
        log_file = os.path.join(log_dir, "calibration.log")
        handlers.append(logging.FileHandler(log_file, mode="a"))
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s: %(message)s",
        handlers=handlers,
        datefmt="%Y-%m-%d %H:%M:%S",
        force=True,
    )
    return log_file


def result_to_dict(result: FitResult, calibrator=None) -> Dict:
    data = {
        "variant": result.variant.name,
        "bias": result.bg.tolist(),
        "mg": result.mg.tolist(),
        "scale_factors": result.scale_factors.tolist(),
        "cross_coupling_errors": result.cross_coupling_errors.tolist(),
        "gg": None if result.gg is None else result.gg.tolist(),
        "chi_sq": result.chi_sq,
        "covariance": None if result.covariance is None else result.covariance.tolist(),
    }
    if calibrator is not None and calibrator.inliers is not None:
        data["inliers"] = int(np.count_nonzero(calibrator.inliers))
        data["measurements"] = len(calibrator.inliers)
        data["iterations"] = calibrator.iterations
    return data


def save_to_json(calibrations: Dict[str, Dict], output_file: str = "imu_calibration.json") -> str:
    """
    Save all calibration results to a single JSON file.

    Args:
        calibrations: Dict with sensor names as keys and result dicts as values
        output_file: Output JSON file path
    """
    out_dir = os.path.dirname(output_file)
    if out_dir:
        os.makedirs(out_dir, exist_ok=True)
    with open(output_file, 'w') as f:
        json.dump(calibrations, f, indent=2)
    return output_file


def print_result(name: str, result: FitResult):
    np.set_printoptions(precision=6, suppress=True)
    print(f"\n=== {name} ({result.variant.name}) ===")
    print(f"Bias: {result.bg}")
    print(f"Scale factors: {result.scale_factors}")
    print(f"Cross coupling errors: {result.cross_coupling_errors}")
    if result.gg is not None:
        print(f"G-dependent cross biases:\n{result.gg}")
    if result.chi_sq is not None:
        print(f"Chi-square: {result.chi_sq:.6g}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Robust IMU calibration (accelerometer and gyroscope)")
    parser.add_argument("--accel", type=str, help="CSV of frames with known specific force")
    parser.add_argument("--gyro", type=str, help="CSV of motion sequences")
    parser.add_argument("--method", type=str, default="msac", choices=[m.value for m in RobustMethod])
    parser.add_argument("--threshold", type=float, default=1e-2)
    parser.add_argument("--confidence", type=float, default=0.99)
    parser.add_argument("--max-iterations", type=int, default=5000)
    parser.add_argument("--common-axis", action=argparse.BooleanOptionalAction, default=True)
    parser.add_argument("--g-dependent", action=argparse.BooleanOptionalAction, default=True,
                        help="Estimate gyroscope G-dependent cross biases")
    parser.add_argument("--chip", type=str, default=None, help="Sensor chip for default noise figures")
    parser.add_argument("--sampling-rate", type=float, default=100.0)
    parser.add_argument("--output", type=str, default="imu_calibration.json")
    parser.add_argument("--plot", type=str, default=None, help="Directory for residual plots")
    parser.add_argument("--seed", type=int, default=None)
    parser.add_argument("--log-dir", type=str, default=None)
    return parser


def main(argv=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not args.accel and not args.gyro:
        parser.error("at least one of --accel or --gyro is required")

    setup_logging(args.log_dir)
    loader = DataLoader(chip=args.chip, sampling_rate_hz=args.sampling_rate)
    method = RobustMethod.parse(args.method)

    calibrations = {}
    accel_result = None

    if args.accel:
        frames = loader.load_frame_kinematics(args.accel)
        config = RobustCalibratorConfig(threshold=args.threshold, confidence=args.confidence,
                                        max_iterations=args.max_iterations,
                                        common_axis=args.common_axis, seed=args.seed,
                                        quality_scores=_quality_scores(method, frames))
        calibrator = create_robust_calibrator("accelerometer", method, frames, config,
                                              observer=TqdmProgressObserver("Accelerometer"))
        accel_result = calibrator.calibrate()
        print_result("Accelerometer", accel_result)
        calibrations["accelerometer"] = result_to_dict(accel_result, calibrator)
        if args.plot:
            path = plot_residuals(calibrator.residuals, calibrator.inliers, args.threshold,
                                  os.path.join(args.plot, "accelerometer_residuals.png"),
                                  title="Accelerometer residuals")
            print(f"Saved {path}")

    if args.gyro:
        sequences = loader.load_sequences(args.gyro)
        config = RobustCalibratorConfig(threshold=args.threshold, confidence=args.confidence,
                                        max_iterations=args.max_iterations,
                                        common_axis=args.common_axis,
                                        estimate_g_dependent_cross_biases=args.g_dependent,
                                        seed=args.seed,
                                        quality_scores=_quality_scores(method, sequences))
        calibrator = create_robust_calibrator("gyroscope", method, sequences, config,
                                              observer=TqdmProgressObserver("Gyroscope"))
        if accel_result is not None:
            calibrator.use_accelerometer_result(accel_result)
        gyro_result = calibrator.calibrate()
        print_result("Gyroscope", gyro_result)
        calibrations["gyroscope"] = result_to_dict(gyro_result, calibrator)
        if args.plot:
            path = plot_residuals(calibrator.residuals, calibrator.inliers, args.threshold,
                                  os.path.join(args.plot, "gyroscope_residuals.png"),
                                  title="Gyroscope residuals")
            print(f"Saved {path}")

    output = save_to_json(calibrations, args.output)
    print(f"\nCalibration saved to {output}")
    return 0


def _quality_scores(method: RobustMethod, measurements):
    # PROSAC: trust low-noise measurements first
    if method is not RobustMethod.PROSAC:
        return None
    std = []
    for m in measurements:
        if hasattr(m, "average_angular_rate_std"):
            std.append(m.average_angular_rate_std())
        else:
            std.append(m.specific_force_std)
    return 1.0 / (1.0 + np.asarray(std))


if __name__ == "__main__":
    raise SystemExit(main())
