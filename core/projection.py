"""
Projection — 投影坐标 → 经纬度

测量用 LAS 通常以平面直角坐标 (米) 保存，缩放级别分辨率需要 (经度, 纬度)。
在体素化之前用 pyproj 把水平坐标转换到 WGS84，高度/颜色/强度保持不变。
"""

from __future__ import annotations

import logging
from functools import lru_cache
from typing import Any

import numpy as np
from pyproj import CRS, Transformer

from core.point_cloud import PointCloudData

logger = logging.getLogger(__name__)

WGS84 = "EPSG:4326"


@lru_cache(maxsize=16)
def _transformer(source_crs: str) -> Transformer:
    # always_xy: 输入 (东, 北)，输出 (经度, 纬度)
    return Transformer.from_crs(CRS.from_user_input(source_crs), CRS.from_user_input(WGS84), always_xy=True)


def reproject_to_lonlat(points, source_crs: Any, swap_xy: bool = False) -> PointCloudData:
    """
    将投影坐标点云转换为 (经度°, 纬度°, 高度)。

    Parameters
    ----------
    points : PointCloudData | ndarray | Iterable[Point]
    source_crs : str | int
        源坐标系，如 ``"EPSG:6677"`` (JGD2011 平面直角 IX 系) 或 ``6677``
    swap_xy : bool
        部分 LAS 文件的 x 列实际是北向坐标，True 时先交换 x/y

    Returns
    -------
    PointCloudData
        新的点云对象，输入不被修改
    """
    pc = PointCloudData.coerce(points)
    if isinstance(source_crs, int) and not isinstance(source_crs, bool):
        source_crs = f"EPSG:{source_crs}"

    transformer = _transformer(str(source_crs))

    if pc.n_points == 0:
        return pc

    east = pc.points[:, 1] if swap_xy else pc.points[:, 0]
    north = pc.points[:, 0] if swap_xy else pc.points[:, 1]
    lon, lat = transformer.transform(east, north)

    positions = np.column_stack([
        np.asarray(lon, dtype=np.float64),
        np.asarray(lat, dtype=np.float64),
        pc.points[:, 2],
    ])

    logger.info("Reprojected %d points from %s to lon/lat (swap_xy=%s)",
                pc.n_points, source_crs, swap_xy)
    return PointCloudData(
        points=positions,
        colors=pc.colors,
        intensity=pc.intensity,
        metadata={**pc.metadata, "source_crs": str(source_crs)},
    )
