from .error_model import (CalibrationVariant, FitParameters, PhysicalParameters,
                          cross_coupling_errors, mg_from_scale_factors_and_cross_coupling_errors,
                          scale_factors)
from .exceptions import (CalibrationError, ConfigurationError, LockedError, NotReadyError,
                         NumericalError, RobustFailureError)
from .measurements import FrameKinematics, MotionSequence, SampledKinematics
