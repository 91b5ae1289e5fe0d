"""Authorization-code exchange against the provider's token endpoint.

:class:`CodeExchanger` performs exactly one form-encoded POST per code
(``grant_type=authorization_code``) and either returns an
:class:`~iglogin.models.ExchangeResult` or raises
:class:`~iglogin.exceptions.ExchangeError`. It never retries: Instagram
codes are single-use, so a second attempt with the same code can only
fail.

See Also:
    :meth:`iglogin.controller.FlowController.exchange_code`, which turns
    the exception into a failure callback.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

import httpx

from iglogin.exceptions import ExchangeError
from iglogin.models import ExchangeResult
from iglogin.redirect import clean_code

logger = logging.getLogger(__name__)


class CodeExchanger:
    """Exchange authorization codes for access tokens.

    Args:
        token_url: The provider's token endpoint.
        client: Optional shared :class:`httpx.AsyncClient`. When omitted a
            short-lived client is created for each exchange. Tests pass a
            client built on :class:`httpx.MockTransport`.
        timeout: Seconds before the request is abandoned. ``None`` waits
            indefinitely.

    Example::

        exchanger = CodeExchanger("https://api.instagram.com/oauth/access_token")
        result = await exchanger.exchange("app-id", "secret", redirect_uri, code)
        print(result.access_token)
    """

    def __init__(
        self,
        token_url: str,
        client: Optional[httpx.AsyncClient] = None,
        timeout: Optional[float] = None,
    ) -> None:
        self._token_url = token_url
        self._client = client
        self._timeout = timeout

    @property
    def token_url(self) -> str:
        return self._token_url

    async def exchange(
        self,
        client_id: str,
        client_secret: Optional[str],
        redirect_uri: str,
        code: str,
    ) -> ExchangeResult:
        """POST the code to the token endpoint and return the token response.

        Args:
            client_id: The app id.
            client_secret: The app secret. Sent as an empty string when
                ``None`` so the provider reports the problem itself.
            redirect_uri: Must equal the redirect URI used to authorize.
            code: The authorization code; ``#_`` residue is stripped.

        Returns:
            The full JSON body, plus its ``access_token`` when present.

        Raises:
            ExchangeError: On transport errors, non-2xx responses, and
                bodies that are not a JSON object.
        """
        data: dict[str, str] = {
            "client_id": client_id,
            "client_secret": client_secret or "",
            "grant_type": "authorization_code",
            "redirect_uri": redirect_uri,
            "code": clean_code(code),
        }
        logger.debug("Exchanging authorization code at %s", self._token_url)

        try:
            if self._client is not None:
                response = await self._post(self._client, data)
            else:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    response = await self._post(client, data)
            response.raise_for_status()
            body: Any = response.json()
        except httpx.HTTPStatusError as exc:
            raise ExchangeError(
                f"Token exchange failed with status {exc.response.status_code}",
                status_code=exc.response.status_code,
                detail=exc.response.text,
            ) from exc
        except httpx.HTTPError as exc:
            raise ExchangeError(
                f"Token exchange failed: {exc}", detail=str(exc)
            ) from exc
        except ValueError as exc:
            raise ExchangeError(
                "Token response is not valid JSON",
                status_code=response.status_code,
                detail=response.text,
            ) from exc

        if not isinstance(body, dict):
            raise ExchangeError(
                "Token response is not a JSON object",
                status_code=response.status_code,
                detail=response.text,
            )

        token = body.get("access_token")
        if not token:
            logger.warning("Token response has no access_token; passing the body through")
        return ExchangeResult(access_token=str(token) if token else None, raw=body)

    async def _post(self, client: httpx.AsyncClient, data: dict[str, str]) -> httpx.Response:
        return await client.post(
            self._token_url,
            data=data,
            headers={"Accept": "application/json"},
            timeout=(
                self._timeout if self._timeout is not None else httpx.USE_CLIENT_DEFAULT
            ),
        )
