# parser_worker/models.py
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Union, Annotated

from pydantic import BaseModel, ConfigDict, Field, StringConstraints, ValidationError

from .errors import InvalidJobError

# ---------- String constraints ----------
UrlStr = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1)]


# ---------- Job payload schema ----------
class JobRequest(BaseModel):
    """
    One parsing request as delivered by the queue producer.

      - url: page to open
      - rules: extraction rules handed to the parser untouched
      - options: environment overrides, layered over the worker defaults
      - actions: steps to run on the page before parsing
      - pagination / transform / rulesParams: optional, forwarded as-is
    """
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    url: UrlStr = Field(..., description="URL for parsing.")
    rules: Dict[str, Any] = Field(default_factory=dict, description="Parsing rules.")
    options: Dict[str, Any] = Field(default_factory=dict, description="Environment options.")
    actions: Optional[Union[List[Any], Dict[str, Any]]] = Field(default=None, description="Pre-parse actions.")
    pagination: Optional[Dict[str, Any]] = Field(default=None, description="Pagination rules.")
    transform: Optional[Any] = Field(default=None, description="Post-processing rules.")
    rules_params: Optional[Dict[str, Any]] = Field(default=None, alias="rulesParams")


class JobData(BaseModel):
    model_config = ConfigDict(extra="allow")

    request: JobRequest


@dataclass
class Job:
    """A dequeued job. `data.request` is what the supervisor executes."""
    id: str
    channel: str
    data: JobData
    attempts: int = 0

    @property
    def request(self) -> JobRequest:
        return self.data.request


def parse_job_data(raw: Any) -> JobData:
    """Validate a decoded payload; raise InvalidJobError with a readable reason."""
    try:
        return JobData.model_validate(raw)
    except ValidationError as e:
        reasons = "; ".join(
            f"{'.'.join(str(p) for p in err.get('loc', ())) or '<root>'}: {err.get('msg')}"
            for err in e.errors()
        )
        raise InvalidJobError(f"Invalid job payload: {reasons}") from e
