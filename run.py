"""
应用启动入口
从 config.yaml 读取配置并启动 uvicorn 服务器
"""
import os

import uvicorn

from promoter.core import load_config

if __name__ == "__main__":
    # 加载配置（路径可用环境变量 CONFIG_FILE 指定）
    config = load_config()
    server_config = config.server

    # 从环境变量读取工作进程数和超时时间（如果设置了）
    workers = int(os.getenv("WORKERS", 1))
    timeout = int(os.getenv("TIMEOUT", 30))

    # 启动 uvicorn 服务器
    uvicorn.run(
        "app:create_app",
        factory=True,
        host=server_config.host,
        port=server_config.port,
        workers=workers,
        timeout_keep_alive=timeout,
        log_level="info",
        access_log=True,
    )
