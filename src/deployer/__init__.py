"""Operator and dependency installation onto a ready cluster."""

from .cert_manager import install_cert_manager
from .helm import Helm
from .operator import OperatorDeployer
from .pgedge import PgedgeChartDeployer, locate_chart

__all__ = ["Helm", "OperatorDeployer", "PgedgeChartDeployer", "install_cert_manager", "locate_chart"]
