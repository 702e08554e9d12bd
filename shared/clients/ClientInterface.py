from abc import ABC, abstractmethod
from typing import Any, Callable

import httpx
from httpx._types import QueryParamTypes, RequestContent, RequestData, RequestFiles

from shared.clients.pool.OutboundPool import OutboundPool, get_global_pool
from shared.helper.HelperConfig import HelperConfig
from shared.models.config import EnvConfig
from shared.models.errors import UpstreamError


class ClientInterface(ABC):
    # Keyword names under which the shared connection pool is offered to the
    # HTTP client constructor, in order of preference.
    POOL_OPTION_NAMES: tuple[str, ...] = ("transport", "limits")

    def __init__(self, helper_config: HelperConfig):
        self.logging = helper_config.get_logger()
        self._helper_config = helper_config
        self.timeout = helper_config.get_number_val(f"{self.get_client_type().upper()}_TIMEOUT", default=30.0)

        # connection handling
        self.client_factory: Callable[..., httpx.AsyncClient] = httpx.AsyncClient
        self.pool: OutboundPool | None = None
        self.accepted_pool_option: str | None = None
        self._client: httpx.AsyncClient | None = None
        self.validate_full_configuration()

    ##########################################
    ############### CHECKER ##################
    ##########################################

    def validate_full_configuration(self) -> None:
        """
        Validates that all required configuration values for the client are set and valid.

        Raises:
            ValueError: If any required configuration value is missing or invalid.
        """
        for config in self._get_required_config():
            _ = self.get_config_val(raw_key=config.env_key, default=config.default, val_type=config.val_type)

    def is_booted(self) -> bool:
        return self._client is not None

    ##########################################
    ################ GETTER ##################
    ##########################################

    ################ GENERAL ##################
    def get_client_type(self) -> str:
        """
        Returns the type of the client in lowercase. E.g. "llm"
        """
        return self._get_client_type().lower()

    @abstractmethod
    def _get_client_type(self) -> str:
        pass

    def get_engine_name(self) -> str:
        """
        Returns the name of the engine used by the client in lowercase. E.g. "cohere"
        """
        return self._get_engine_name().lower()

    @abstractmethod
    def _get_engine_name(self) -> str:
        pass

    ################ CONFIG ##################
    @abstractmethod
    def _get_required_config(self) -> list[EnvConfig]:
        """
        Returns all configuration keys the client reads.

        Returns:
            list[EnvConfig]: A list containing the details of each configuration key.
        """
        pass

    def get_config_prefix(self) -> str:
        """
        Returns:
            str: The env key prefix of the client. E.g. "LLM_COHERE"
        """
        return f"{self.get_client_type().upper()}_{self.get_engine_name().upper()}"

    def _get_config_key_name(self, raw_key: str) -> str:
        return f"{self.get_config_prefix()}_{raw_key.upper()}"

    def get_config_val(self, raw_key: str, default: Any = None, val_type: str = "string") -> Any:
        """
        Retrieves the value of a configuration key for the client.

        Args:
            raw_key (str): The raw configuration key name, e.g. "API_KEY"
            default (Any): The default value to return if the configuration key is not set
            val_type (str): The type of the configuration value ("string", "number", "bool", "list")
        """
        key = self._get_config_key_name(raw_key)
        if val_type == "string":
            return self._helper_config.get_string_val(key, default=default)
        elif val_type == "number":
            return self._helper_config.get_number_val(key, default=default)
        elif val_type == "bool":
            return self._helper_config.get_bool_val(key, default=default)
        elif val_type == "list":
            return self._helper_config.get_list_val(key, default=default)
        else:
            raise ValueError(f"Unsupported config value type '{val_type}' for env key '{raw_key}' in {self.get_client_type().upper()} client '{self.get_engine_name()}'.")

    ################ AUTH ##################
    @abstractmethod
    def _get_auth_header(self) -> dict:
        """
        Returns the authentication header for the backend server.

        Returns:
            dict: A dictionary containing the auth data
        """
        pass

    ################ ENDPOINTS ##################
    @abstractmethod
    def _get_base_url(self) -> str:
        """
        Returns the base URL of the backend server (e.g. "https://api.cohere.com").
        """
        pass

    @abstractmethod
    def _get_endpoint_healthcheck(self) -> str:
        """
        Returns the endpoint path for healthcheck requests (e.g. "/v1/models").
        """
        pass

    ##########################################
    ############### REQUESTS #################
    ##########################################

    async def do_healthcheck(self) -> httpx.Response:
        """Check if the backend is reachable by sending a lightweight request.

        Returns:
            httpx.Response: The response from the healthcheck request.
        """
        return await self.do_request(method="GET", endpoint=self._get_endpoint_healthcheck())

    ##########################################
    ############ CORE REQUESTS ###############
    ##########################################

    async def boot(self) -> None:
        """Create the HTTP client.

        When a connection pool is attached (or one was applied globally), it is
        offered to the client constructor under each name in
        ``POOL_OPTION_NAMES`` until one is accepted. If none is accepted the
        client is created without it. The accepted name is kept in
        ``accepted_pool_option``.
        """
        pool = self.pool or get_global_pool()
        base_kwargs: dict = {"timeout": self.timeout}
        self.accepted_pool_option = None

        if pool is not None:
            options = pool.get_pool_options()
            for name in self.POOL_OPTION_NAMES:
                if name not in options:
                    continue
                try:
                    self._client = self.client_factory(**base_kwargs, **{name: options[name]})
                    self.accepted_pool_option = name
                    self._log_pool_choice(name)
                    return
                except TypeError as e:
                    self._warn_safely("HTTP client rejected pool option '%s': %s", name, e)
            self._warn_safely("No pool option accepted by %s, booting without shared pool", self.__class__.__name__)

        self._client = self.client_factory(**base_kwargs)

    async def close(self) -> None:
        """Close the HTTP client and any other resources."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def do_request(
        self,
        method: str = "GET",
        content: RequestContent | None = None,
        data: RequestData | None = None,
        files: RequestFiles | None = None,
        json: dict | None = None,
        params: QueryParamTypes | None = None,
        endpoint: str = "",
        additional_headers: dict | None = None,
        raise_on_error: bool = False,
    ) -> httpx.Response:
        """Send an HTTP request to the backend.

        Args:
            method: HTTP method (GET, POST, PUT, DELETE, …).
            content: Raw bytes / stream body.
            data: Form-encoded body (dict or list of tuples).
            files: Multipart file upload.
            json: JSON-serialisable body (sets Content-Type automatically).
            params: URL query parameters.
            endpoint: Path to append to the base URL (leading slash optional).
            additional_headers: Extra headers that override the defaults.
            raise_on_error: Raise :class:`UpstreamError` on a non-2xx status.

        Returns:
            The raw httpx.Response.

        Raises:
            RuntimeError: If the client is not booted.
            UpstreamError: On a non-2xx status when raise_on_error is True.
        """
        kwargs = self._build_request_kwargs(
            content=content, data=data, files=files, json=json, params=params,
            endpoint=endpoint, additional_headers=additional_headers,
        )
        response = await self._client.request(method, **kwargs)

        if raise_on_error and not response.is_success:
            self._raise_for_response(kwargs["url"], response.status_code, response.text)

        return response

    async def do_stream_request(
        self,
        method: str = "POST",
        json: dict | None = None,
        endpoint: str = "",
        additional_headers: dict | None = None,
    ) -> httpx.Response:
        """Send a request and return as soon as the response headers arrive.

        The caller owns the returned response and must close it (``aclose``).

        Raises:
            UpstreamError: On a non-2xx status. The response is closed first.
        """
        kwargs = self._build_request_kwargs(json=json, endpoint=endpoint, additional_headers=additional_headers)
        request = self._client.build_request(method, **kwargs)
        response = await self._client.send(request, stream=True)
        if not response.is_success:
            body = (await response.aread()).decode("utf-8", errors="replace")
            await response.aclose()
            self._raise_for_response(kwargs["url"], response.status_code, body)
        return response

    ##########################################
    ############### HELPERS ##################
    ##########################################

    def _build_request_kwargs(
        self,
        content: RequestContent | None = None,
        data: RequestData | None = None,
        files: RequestFiles | None = None,
        json: dict | None = None,
        params: QueryParamTypes | None = None,
        endpoint: str = "",
        additional_headers: dict | None = None,
    ) -> dict:
        if self._client is None:
            raise RuntimeError("HTTP client not initialised. Call boot() before making requests.")

        endpoint = "/" + endpoint.strip().lstrip("/") if endpoint.strip() else ""

        # No default Content-Type: httpx sets it for json/data/files.
        headers: dict = {}
        headers.update(self._get_auth_header())
        if additional_headers:
            headers.update(additional_headers)

        kwargs: dict = {
            "url": f"{self._get_base_url().rstrip('/')}{endpoint}",
            "headers": headers,
            "timeout": self.timeout,
            "params": params,
        }

        # add exactly one body argument
        if content is not None:
            kwargs["content"] = content
        elif data is not None:
            kwargs["data"] = data
        elif files is not None:
            kwargs["files"] = files
        elif json is not None:
            kwargs["json"] = json
        return kwargs

    def _raise_for_response(self, url: str, status_code: int, body: str) -> None:
        self.logging.error("Request to %s failed with status %d: %s", url, status_code, body[:500])
        raise UpstreamError(f"Upstream request failed with status {status_code}: {body[:200]}", upstream_status=status_code)

    def _log_pool_choice(self, name: str) -> None:
        try:
            self.logging.debug("%s booted with shared pool via '%s'", self.__class__.__name__, name)
        except Exception:
            pass

    def _warn_safely(self, msg: str, *args) -> None:
        # a broken logger must never abort client boot
        try:
            self.logging.warning(msg, *args)
        except Exception:
            pass
