from typing import Optional, Dict, Any

import httpx

DEFAULT_TIMEOUT = 10.0
USER_AGENT = "scriptlisp"


async def http_request(method: str, url: str, *, config: Optional[Dict] = None) -> httpx.Response:
    """
    Core HTTP helper used by the module loader.

    config keys: `timeout` (seconds), `headers`, `params`.
    Raises httpx.HTTPStatusError on non-2xx and httpx.HTTPError on transport
    failures; nothing is retried.
    """
    cfg = dict(config or {})
    timeout = float(cfg.pop('timeout', DEFAULT_TIMEOUT))
    headers = {"User-Agent": USER_AGENT, **dict(cfg.pop('headers', {}))}
    params = dict(cfg.pop('params', {}))

    async with httpx.AsyncClient(timeout=timeout, follow_redirects=True) as client:
        resp = await client.request(method.upper(), url, headers=headers, params=params)
        resp.raise_for_status()
        return resp


async def http_get_text(url: str, config: Optional[Dict[str, Any]] = None) -> str:
    resp = await http_request('GET', url, config=config)
    return resp.text
