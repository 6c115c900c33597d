"""
Resolution — 体素分辨率策略

两种策略 (tagged variant)：
1. MeterResolution: 显式指定体素边长 (米)
2. ZoomResolution: Web 墨卡托缩放级别，边长随纬度变化 (cos 缩放)

CoordinateMapper 只通过 resolve() / to_voxel_space() 与策略交互，
不关心具体是哪一种。
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, Dict, Union

import numpy as np

from core.errors import InvalidResolution

# ── Web 墨卡托常量 ──
EARTH_RADIUS_M = 6378137.0
TILE_SIZE_PX = 256
# 缩放级别 0 时赤道上 1 像素的边长 (米)
EQUATOR_M_PER_PX = 2.0 * math.pi * EARTH_RADIUS_M / TILE_SIZE_PX
MAX_LATITUDE = 85.05112877980659
MAX_ZOOM = 30


class Resolution:
    """分辨率策略基类"""

    #: 输入坐标是否为 (经度, 纬度, 高度)
    is_geodetic: bool = False

    def validate(self) -> None:
        raise NotImplementedError

    @property
    def zoom(self) -> int:
        return 0

    def resolve(self, latitudes: np.ndarray) -> np.ndarray:
        """
        为每个点求出体素边长 (米)。

        Parameters
        ----------
        latitudes : ndarray (N,)
            点的纬度；米制策略忽略该参数

        Returns
        -------
        ndarray (N,) float64
        """
        raise NotImplementedError

    def to_voxel_space(self, positions: np.ndarray, edges: np.ndarray) -> np.ndarray:
        """水平坐标 → 体素空间浮点坐标 (N, 2)，调用方负责 floor"""
        raise NotImplementedError

    def valid_mask(self, positions: np.ndarray) -> np.ndarray:
        """该策略可接受的点 (坐标有限性之外的额外约束)"""
        return np.ones(positions.shape[0], dtype=bool)


@dataclass(frozen=True)
class MeterResolution(Resolution):
    """固定边长 (米)"""
    edge_length: float

    def validate(self) -> None:
        try:
            value = float(self.edge_length)
        except (TypeError, ValueError):
            raise InvalidResolution(f"Edge length must be a number, got {self.edge_length!r}")
        if not math.isfinite(value) or value <= 0:
            raise InvalidResolution(f"Edge length must be positive and finite, got {value}")

    def resolve(self, latitudes: np.ndarray) -> np.ndarray:
        return np.full(len(latitudes), float(self.edge_length), dtype=np.float64)

    def to_voxel_space(self, positions: np.ndarray, edges: np.ndarray) -> np.ndarray:
        return positions[:, :2] / edges[:, None]


@dataclass(frozen=True)
class ZoomResolution(Resolution):
    """
    Web 墨卡托缩放级别。

    输入点为 (经度°, 纬度°, 高度 m)。水平坐标为该缩放级别下的全球像素坐标，
    垂直方向使用同一点的像素边长量化，保证体素为立方体。
    """
    zoom_level: int
    is_geodetic = True

    def validate(self) -> None:
        if isinstance(self.zoom_level, bool) or not isinstance(self.zoom_level, (int, np.integer)):
            raise InvalidResolution(f"Zoom level must be an integer, got {self.zoom_level!r}")
        if not 0 <= int(self.zoom_level) <= MAX_ZOOM:
            raise InvalidResolution(f"Zoom level must be within 0..{MAX_ZOOM}, got {self.zoom_level}")

    @property
    def zoom(self) -> int:
        return int(self.zoom_level)

    def resolve(self, latitudes: np.ndarray) -> np.ndarray:
        return pixel_resolution(np.asarray(latitudes, dtype=np.float64), self.zoom)

    def to_voxel_space(self, positions: np.ndarray, edges: np.ndarray) -> np.ndarray:
        return lonlat_to_pixel(positions[:, 0], positions[:, 1], self.zoom)

    def valid_mask(self, positions: np.ndarray) -> np.ndarray:
        lon = positions[:, 0]
        lat = positions[:, 1]
        return (np.abs(lat) <= MAX_LATITUDE) & (lon >= -180.0) & (lon <= 180.0)


# ── 墨卡托公式 ──────────────────────────────────────────────────

def pixel_resolution(latitudes: Union[float, np.ndarray], zoom: int) -> np.ndarray:
    """缩放级别 zoom 下，给定纬度处 1 像素对应的米数"""
    lat_rad = np.radians(latitudes)
    return EQUATOR_M_PER_PX * np.cos(lat_rad) / (2 ** zoom)


def lonlat_to_pixel(lon: np.ndarray, lat: np.ndarray, zoom: int) -> np.ndarray:
    """
    经纬度 → 全球像素坐标 (未取整)，返回 (N, 2)。

    结果限制在 [0, world) 内：经度 180° 与纬度 ±MAX_LATITUDE 落在最后一列/行，
    取整后不会越出 0..2**zoom-1 的瓦片范围。
    """
    world = float(TILE_SIZE_PX * (2 ** zoom))
    lat_rad = np.radians(np.clip(lat, -MAX_LATITUDE, MAX_LATITUDE))
    px = (np.asarray(lon, dtype=np.float64) + 180.0) / 360.0 * world
    py = (1.0 - np.arctanh(np.sin(lat_rad)) / math.pi) / 2.0 * world
    upper = np.nextafter(world, 0.0)
    return np.column_stack([np.clip(px, 0.0, upper), np.clip(py, 0.0, upper)])


def parse_resolution(value: Union[Resolution, float, Dict[str, Any]]) -> Resolution:
    """
    从配置值构造分辨率策略。

    接受 ``1.0``、``{"meter": 1.0}``、``{"zoom": 18}`` 或现成的 Resolution。
    """
    if isinstance(value, Resolution):
        resolution = value
    elif isinstance(value, dict):
        if "zoom" in value:
            resolution = ZoomResolution(value["zoom"])
        elif "meter" in value:
            resolution = MeterResolution(value["meter"])
        else:
            raise InvalidResolution(f"Unknown resolution config: {value}")
    elif isinstance(value, (int, float)) and not isinstance(value, bool):
        resolution = MeterResolution(float(value))
    else:
        raise InvalidResolution(f"Unknown resolution config: {value!r}")

    resolution.validate()
    return resolution
