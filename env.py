"""从项目根目录的 .env 文件加载环境变量。"""

from __future__ import annotations

from dotenv import load_dotenv

load_dotenv()
