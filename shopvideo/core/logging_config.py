"""日志配置"""

import logging
from typing import Optional

from shopvideo.core.config import settings

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def setup_logging(level: Optional[str] = None) -> None:
    """配置根日志记录器"""
    logging.basicConfig(
        level=getattr(logging, (level or settings.log_level).upper(), logging.INFO),
        format=LOG_FORMAT,
        handlers=[
            logging.StreamHandler()
        ]
    )

    # 过滤掉aiohttp和asyncio的DEBUG信息
    logging.getLogger('aiohttp.access').setLevel(logging.ERROR)
    logging.getLogger('aiohttp.client').setLevel(logging.WARNING)
    logging.getLogger('asyncio').setLevel(logging.WARNING)
