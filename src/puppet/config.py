import json
import logging
import os
from pathlib import Path
from typing import Literal

import pydantic
from pydantic import BaseModel, Field, model_validator

from puppet.engine import ChatEngine
from puppet.errors import ValidationError
from puppet.provider import (
    PROVIDERS,
    AzureOpenAIProvider,
    GeminiProvider,
    ModelProvider,
)
from puppet.tools import FunctionRegistry
from puppet.transport import HttpTransport

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path("~/.config/puppet/llm.json")


class ModelConfig(BaseModel):
    """One model endpoint.

    ``url`` is the full completion endpoint.  Azure and Gemini models may
    give ``endpoint`` instead: Azure then uses ``model`` as the deployment
    name, Gemini also needs ``project`` and ``location``.
    """

    provider: Literal["openai", "azure", "gemini"] = "openai"
    url: str | None = None
    endpoint: str | None = None
    project: str | None = None
    location: str | None = None
    api_key: str
    model: str

    @model_validator(mode="after")
    def check_endpoint(self) -> "ModelConfig":
        if self.url is not None:
            return self
        if self.provider == "openai" or self.endpoint is None:
            raise ValueError(f"url is required for provider {self.provider}")
        if self.provider == "gemini" and not (self.project and self.location):
            raise ValueError("endpoint of gemini requires project and location")
        return self

    def create_provider(self) -> ModelProvider:
        api_key = resolve_api_key(self.api_key)
        if self.url is not None:
            return PROVIDERS[self.provider](
                url=self.url, model=self.model, api_key=api_key,
            )
        if self.provider == "azure":
            return AzureOpenAIProvider.for_deployment(
                self.endpoint, self.model, api_key,
            )
        return GeminiProvider.for_model(
            self.endpoint, self.project, self.location, self.model, api_key,
        )


class AgentConfig(BaseModel):
    model: str
    system_message: str | None = None
    temperature: float | None = None
    top_p: float | None = None
    functions: list[str] = Field(default_factory=list)


def resolve_api_key(api_key: str) -> str:
    """Expand ``env:NAME`` into the value of environment variable NAME."""
    if api_key.startswith("env:"):
        name = api_key[len("env:"):]
        value = os.environ.get(name)
        if value is None:
            raise ValidationError(f"can not find env, name={name}")
        return value
    return api_key


class Config(BaseModel):
    models: dict[str, ModelConfig] = Field(default_factory=dict)
    agents: dict[str, AgentConfig] = Field(default_factory=dict)

    @classmethod
    def load(cls, path: str | Path | None = None) -> "Config":
        path = Path(path or DEFAULT_CONFIG_PATH).expanduser()
        logger.info(f"load config, path={path}")
        try:
            content = path.read_text(encoding="utf-8")
        except OSError as e:
            raise ValidationError(f"can not read config, path={path}, error={e}") from e
        return cls.parse(content)

    @classmethod
    def parse(cls, content: str) -> "Config":
        try:
            return cls.model_validate(json.loads(content))
        except (json.JSONDecodeError, pydantic.ValidationError) as e:
            raise ValidationError(f"invalid config, error={e}") from e

    def create(
        self,
        name: str,
        registry: FunctionRegistry,
        transport: HttpTransport | None = None,
        max_turns: int | None = None,
    ) -> ChatEngine:
        """Build the engine for agent *name*."""
        agent = self.agents.get(name)
        if agent is None:
            raise ValidationError(f"can not find agent, name={name}")
        model = self.models.get(agent.model)
        if model is None:
            raise ValidationError(f"can not find model, name={agent.model}")

        logger.info(f"create agent, name={name}")
        engine = ChatEngine(
            provider=model.create_provider(),
            registry=registry.subset(agent.functions),
            transport=transport,
            max_turns=max_turns,
        )
        if agent.system_message is not None:
            engine.set_system_message(agent.system_message)
        if agent.temperature is not None:
            engine.set_option(temperature=agent.temperature)
        if agent.top_p is not None:
            engine.set_option(top_p=agent.top_p)
        return engine
