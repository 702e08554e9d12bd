from fastapi import APIRouter, Depends, Request

from server.dependencies.rate_limit import enforce_rate_limit
from server.models.requests import EmbedRequest, RerankRequest, VisionRequest
from server.models.responses import EmbeddingItem, EmbedResponse, RerankResult, RerankResponse, VisionResponse
from shared.models.errors import InvalidRequestError

router = APIRouter(prefix="/v1", tags=["inference"], dependencies=[Depends(enforce_rate_limit)])


def _resolve_model(request: Request, model: str | None, model_type: str) -> str:
    registry = request.app.state.model_registry
    model = model or registry.get_default_model(model_type)
    registry.validate_model(model, required_type=model_type)
    return model


def _require_input(value) -> None:
    if not value or (isinstance(value, list) and len(value) == 0):
        raise InvalidRequestError("Input is required")


@router.post("/embed")
async def embed(request: Request, body: EmbedRequest) -> EmbedResponse:
    """Embed one text or a list of texts.

    Identical requests within the model's cache TTL are answered from the
    upstream response cache.
    """
    _require_input(body.input)
    model = _resolve_model(request, body.model, "embed")
    texts = body.input if isinstance(body.input, list) else [body.input]

    vectors = await request.app.state.llm_client.do_embed({"model": model, "texts": texts})
    return EmbedResponse(data=[EmbeddingItem(index=i, embedding=v) for i, v in enumerate(vectors)])


@router.post("/rerank")
async def rerank(request: Request, body: RerankRequest) -> RerankResponse:
    """Rank ``documents`` by relevance to ``query``, truncated to ``top_n`` when given."""
    if not body.query or body.documents is None:
        raise InvalidRequestError("Query and documents are required")
    if len(body.documents) == 0:
        raise InvalidRequestError("Documents array required")
    model = _resolve_model(request, body.model, "rerank")

    payload = {"model": model, "query": body.query, "documents": body.documents}
    if body.top_n is not None:
        payload["top_n"] = body.top_n
    results = await request.app.state.llm_client.do_rerank(payload)
    if body.top_n is not None:
        results = results[: body.top_n]
    return RerankResponse(
        results=[
            RerankResult(index=r.get("index", 0), relevance_score=r.get("relevance_score", r.get("score", 0)))
            for r in results
        ]
    )


@router.post("/vision")
async def vision(request: Request, body: VisionRequest) -> VisionResponse:
    """Describe or answer questions about images. Returns 501 when the upstream has no vision support."""
    _require_input(body.input)
    model = _resolve_model(request, body.model, "vision")
    data = await request.app.state.llm_client.do_vision({"model": model, "input": body.input})
    return VisionResponse(data=data)
