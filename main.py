#!/usr/bin/env python3
"""
VoxelTiler — 点云 → 瓦片体素网格转换器

入口点：配置日志、加载配置、运行瓦片管线。

    python main.py [config/settings.yaml]
"""

from __future__ import annotations

import logging
import sys
from pathlib import Path
from typing import List, Optional

# 确保项目根目录在 sys.path
PROJECT_ROOT = Path(__file__).resolve().parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

DEFAULT_CONFIG_PATH = PROJECT_ROOT / "config" / "settings.yaml"


def setup_logging(level: str = "INFO") -> None:
    """配置日志系统"""
    log_format = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
    logging.basicConfig(
        level=getattr(logging, str(level).upper(), logging.INFO),
        format=log_format,
        datefmt="%H:%M:%S",
    )
    # 降低第三方库日志级别
    for lib in ("trimesh", "laspy", "urllib3"):
        logging.getLogger(lib).setLevel(logging.WARNING)


def load_config(config_path: Optional[Path] = None) -> dict:
    """加载配置文件"""
    import yaml

    config_path = Path(config_path) if config_path else DEFAULT_CONFIG_PATH
    if config_path.exists():
        with open(config_path, "r", encoding="utf-8") as f:
            return yaml.safe_load(f) or {}
    return {}


def main(argv: Optional[List[str]] = None) -> int:
    """主入口"""
    argv = sys.argv[1:] if argv is None else argv
    config = load_config(Path(argv[0]) if argv else None)

    setup_logging(config.get("log_level", "INFO"))
    logger = logging.getLogger("VoxelTiler")
    logger.info("Config loaded: %d sections", len(config))

    from core.resource_manager import ResourceManager
    from pipelines.pipeline_tiles import PipelineTiles, TilePipelineConfig

    rm = ResourceManager.from_config(config.get("compute", {}))
    rm.initialize()

    pipeline_config = TilePipelineConfig.from_dict(config.get("pipeline", {}))
    if not pipeline_config.input_path:
        logger.error("No input_path configured (pipeline.input_path)")
        return 2

    def progress(pct: float, msg: str) -> None:
        logger.info("[%5.1f%%] %s", pct, msg)

    result = PipelineTiles(rm).run(pipeline_config, progress_callback=progress)

    for warning in result.warnings + result.simplification_failures:
        logger.warning(warning)
    if not result.success:
        for error in result.errors:
            logger.error(error)
        return 1

    logger.info("Wrote %d files (%d tiles, %d faces)",
                len(result.output_paths), result.tile_count, result.total_faces)
    return 0


if __name__ == "__main__":
    sys.exit(main())
