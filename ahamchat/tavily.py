import logging
from typing import Any, Dict, List, Optional

import httpx

TAVILY_SEARCH_URL = "https://api.tavily.com/search"
TAVILY_EXTRACT_URL = "https://api.tavily.com/extract"
MIN_QUERY_LENGTH = 5
MIN_RESULTS = 5

logger = logging.getLogger("uvicorn.error")


def normalize_results(raw: Any) -> List[Dict[str, str]]:
    return [
        {"title": r.get("title") or "", "url": r.get("url") or "", "content": r.get("content") or ""}
        for r in raw or []
        if isinstance(r, dict)
    ]


def normalize_images(raw: Any) -> List[Dict[str, str]]:
    """Tavily returns bare URLs or {url, description} objects depending on the request flags."""
    images: List[Dict[str, str]] = []
    for image in raw or []:
        if isinstance(image, str):
            images.append({"url": image, "description": ""})
        elif isinstance(image, dict) and image.get("url"):
            images.append({"url": image["url"], "description": image.get("description") or ""})
    return images


class TavilyClient:
    def __init__(self, api_key: Optional[str], timeout: float = 15.0):
        self.api_key = api_key
        # One pooled client shared by every concurrent search/retrieve call.
        self.client = httpx.AsyncClient(
            timeout=timeout,
            limits=httpx.Limits(max_connections=32, max_keepalive_connections=16),
        )

    @property
    def enabled(self) -> bool:
        return bool(self.api_key)

    async def search(
        self,
        query: str,
        search_depth: str = "basic",
        max_results: int = MIN_RESULTS,
        include_images: bool = True,
        include_domains: Optional[List[str]] = None,
        exclude_domains: Optional[List[str]] = None,
    ) -> Dict[str, Any]:
        if not self.enabled:
            return {"error": "missing_api_key"}
        payload: Dict[str, Any] = {
            # Tavily rejects queries shorter than 5 characters.
            "query": query.ljust(MIN_QUERY_LENGTH),
            "search_depth": search_depth,
            "max_results": max(max_results, MIN_RESULTS),
            "include_images": include_images,
            "include_image_descriptions": include_images,
            "include_answers": True,
        }
        if include_domains:
            payload["include_domains"] = include_domains
        if exclude_domains:
            payload["exclude_domains"] = exclude_domains
        return await self._post(TAVILY_SEARCH_URL, payload)

    async def extract(self, urls: List[str], extract_depth: str = "basic") -> Dict[str, Any]:
        if not self.enabled:
            return {"error": "missing_api_key"}
        return await self._post(TAVILY_EXTRACT_URL, {"urls": urls, "extract_depth": extract_depth})

    async def _post(self, url: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        """POST with the key in body and header; failures come back as {"error": ...} dicts."""
        try:
            resp = await self.client.post(
                url,
                json={**payload, "api_key": self.api_key},
                headers={"Content-Type": "application/json", "X-API-Key": self.api_key or ""},
            )
            resp.raise_for_status()
            return resp.json()
        except httpx.HTTPStatusError as exc:
            status = exc.response.status_code
            try:
                detail: Any = exc.response.json()
            except ValueError:
                detail = exc.response.text
            logger.warning("Tavily %s returned HTTP %s", url, status)
            return {"error": "http_status", "status_code": status, "detail": detail}
        except httpx.RequestError as exc:
            logger.warning("Tavily %s request failed: %s", url, exc)
            return {"error": "request_failed", "detail": str(exc)}

    async def close(self) -> None:
        if not self.client.is_closed:
            await self.client.aclose()
