from tqdm import tqdm

from imu_calibration.solvers.base_solver import CalibrationObserver


class TqdmProgressObserver(CalibrationObserver):
    """Shows robust calibration progress as a tqdm bar (0-100%)."""

    def __init__(self, desc: str = "Calibrating", **tqdm_kwargs):
        self.desc = desc
        self.tqdm_kwargs = tqdm_kwargs
        self.bar = None

    def on_start(self, calibrator):
        # on_end is not called when a calibration fails
        self.close()
        self.bar = tqdm(total=100, desc=self.desc, unit="%", **self.tqdm_kwargs)

    def on_progress_change(self, calibrator, progress: float):
        if self.bar is None:
            return
        target = int(round(progress * 100))
        if target > self.bar.n:
            self.bar.update(target - self.bar.n)

    def on_end(self, calibrator):
        if self.bar is None:
            return
        self.bar.update(self.bar.total - self.bar.n)
        self.close()

    def close(self):
        """Closes the bar of the last run, if still open."""
        if self.bar is not None:
            self.bar.close()
            self.bar = None
