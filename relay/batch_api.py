"""
HTTP 接口 - 状态页和批量传输接口占位

- GET  /                              返回固定的运行状态文本
- POST /{org}/{repo}/objects/batch    接收 JSON 请求体，仅记录请求内容，返回空的 200 响应

批量传输协议本身（对象上传协商等）不在此实现。
"""

import logging

from aiohttp import web

logger = logging.getLogger('hubless-http')

STATUS_TEXT = "Hubless is running"


async def root(request: web.Request) -> web.Response:
    """状态页"""
    return web.Response(text=STATUS_TEXT)


async def objects_batch(request: web.Request) -> web.Response:
    """
    批量传输接口占位

    请求体必须是合法 JSON，否则返回 400。
    """
    org = request.match_info['org']
    repo = request.match_info['repo']

    try:
        body = await request.json()
    except ValueError:
        logger.warning(f"批量请求的请求体不是合法 JSON: {org}/{repo}")
        raise web.HTTPBadRequest(text="Invalid JSON body")

    logger.info(f"收到批量请求: {org}/{repo}")
    logger.info(f"请求体: {body}")
    logger.debug(f"请求头: {dict(request.headers)}")
    return web.Response()


def create_app() -> web.Application:
    """创建 aiohttp 应用"""
    app = web.Application()
    app.router.add_get('/', root)
    app.router.add_post('/{org}/{repo}/objects/batch', objects_batch)
    return app
