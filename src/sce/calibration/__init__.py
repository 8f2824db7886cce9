"""Calibration rounds run before full screening."""

from .controller import CalibrationController

__all__ = ["CalibrationController"]
