from pydantic import BaseModel


class EnvConfig(BaseModel):
    """
    Describes one environment setting an upstream client reads on construction.

    Attributes:
        env_key (str): Key suffix below the client prefix, e.g. "API_KEY" for LLM_COHERE_API_KEY.
        val_type (str): Expected value type: "string", "number", "bool" or "list".
        default (str | int | float | bool | list | None): Fallback value. None marks the setting as required.
    """

    env_key: str
    val_type: str = "string"
    default: str | int | float | bool | list | None = None
