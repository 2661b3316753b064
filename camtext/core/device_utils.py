"""Device detection and capability profiling."""
from __future__ import annotations
import os
import logging
from typing import Optional
from dataclasses import dataclass

import psutil

from .entities import DeviceProfile

logger = logging.getLogger(__name__)


@dataclass
class DeviceInfo:
    """Information about the detected compute device."""
    device: str
    is_cuda_available: bool
    cuda_device_count: int
    cpu_count: int
    total_memory_gb: float
    device_name: Optional[str] = None
    gpu_memory_gb: Optional[float] = None


class DeviceDetector:
    """Utility class for detecting compute devices."""

    @staticmethod
    def detect_device(prefer_gpu: bool = True) -> DeviceInfo:
        """
        Detect the best available compute device.

        Args:
            prefer_gpu: Whether to prefer GPU over CPU if available

        Returns:
            DeviceInfo containing device information and selection
        """
        cpu_count = os.cpu_count() or 1
        total_memory_gb = psutil.virtual_memory().total / (1024 ** 3)

        try:
            import torch
        except ImportError:
            return DeviceInfo(
                device='cpu',
                is_cuda_available=False,
                cuda_device_count=0,
                cpu_count=cpu_count,
                total_memory_gb=total_memory_gb,
                device_name='CPU (PyTorch not available)'
            )

        cuda_available = torch.cuda.is_available()
        cuda_device_count = torch.cuda.device_count() if cuda_available else 0

        device_name = 'CPU'
        gpu_memory_gb = None
        device = 'cpu'

        if cuda_available and prefer_gpu and cuda_device_count > 0:
            device = 'cuda'
            try:
                device_name = torch.cuda.get_device_name(0)
                gpu_memory_gb = torch.cuda.get_device_properties(0).total_memory / (1024 ** 3)
            except RuntimeError:
                device_name = 'CUDA Device'

        return DeviceInfo(
            device=device,
            is_cuda_available=cuda_available,
            cuda_device_count=cuda_device_count,
            cpu_count=cpu_count,
            total_memory_gb=total_memory_gb,
            device_name=device_name,
            gpu_memory_gb=gpu_memory_gb
        )

    @staticmethod
    def get_device_info_string(device_info: DeviceInfo) -> str:
        lines = [f"Selected device: {device_info.device}"]
        if device_info.device_name:
            lines.append(f"Device name: {device_info.device_name}")
        if device_info.gpu_memory_gb:
            lines.append(f"Device memory: {device_info.gpu_memory_gb:.1f} GB")
        lines.append(f"CPUs: {device_info.cpu_count}")
        lines.append(f"System memory: {device_info.total_memory_gb:.1f} GB")
        return " | ".join(lines)


def is_constrained_device(device_info: DeviceInfo, memory_threshold_gb: float = 4.0) -> bool:
    """Low-memory or low-parallelism hosts get the conservative profile."""
    return device_info.total_memory_gb < memory_threshold_gb or device_info.cpu_count <= 2


def build_device_profile(device_info: DeviceInfo, config) -> DeviceProfile:
    """Derive the session DeviceProfile from detected hardware and config limits."""
    constrained = bool(config.force_constrained) or is_constrained_device(
        device_info, config.constrained_memory_gb
    )

    if constrained:
        batch_size = config.constrained_batch_size
        max_dimension = config.constrained_max_dimension
    else:
        batch_size = config.batch_size
        max_dimension = config.max_dimension

    pool_size = config.pool_size or device_info.cpu_count
    pool_size = max(1, min(pool_size, config.max_pool_size))

    return DeviceProfile(
        max_dimension=max_dimension,
        batch_size=batch_size,
        is_constrained=constrained,
        pool_size=pool_size,
    )


def probe_device_profile(config, prefer_gpu: Optional[bool] = None) -> DeviceProfile:
    """Detect hardware once and build the immutable DeviceProfile for the session."""
    device_info = DeviceDetector.detect_device(config.prefer_gpu if prefer_gpu is None else prefer_gpu)
    profile = build_device_profile(device_info, config)
    logger.info(f"Device Detection: {DeviceDetector.get_device_info_string(device_info)}")
    logger.info(
        f"Device profile: constrained={profile.is_constrained}, batch_size={profile.batch_size}, "
        f"max_dimension={profile.max_dimension}, pool_size={profile.pool_size}"
    )
    return profile
