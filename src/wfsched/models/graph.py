from typing import Any, Optional, Union

from pydantic import BaseModel, Field, field_validator, model_validator

from .enums import JobCondition

ParamValue = Union[str, int, float, bool]
ParameterSet = dict[str, ParamValue]

_MATRIX_KEYS = {"axes", "include", "exclude", "parameter_sets"}


class MatrixSpec(BaseModel):
    """Matrix of parameter sets for one job.

    Accepts an explicit ordered list of parameter sets, or an axis mapping
    ``{"name": [values...], "include": [...], "exclude": [...]}`` which is
    expanded as an ordered cartesian product.
    """

    model_config = {"frozen": True}

    parameter_sets: list[ParameterSet] = []
    axes: dict[str, list[ParamValue]] = {}
    include: list[ParameterSet] = []
    exclude: list[ParameterSet] = []

    @model_validator(mode="before")
    @classmethod
    def coerce_shorthand(cls, data: Any) -> Any:
        if isinstance(data, list):
            return {"parameter_sets": data}
        if isinstance(data, dict) and not set(data) <= _MATRIX_KEYS:
            data = dict(data)
            include = data.pop("include", [])
            exclude = data.pop("exclude", [])
            return {"axes": data, "include": include, "exclude": exclude}
        return data

    @model_validator(mode="after")
    def validate_shape(self):
        if self.parameter_sets and (self.axes or self.include or self.exclude):
            raise ValueError("parameter_sets cannot be combined with axes/include/exclude")
        for name, values in self.axes.items():
            if not values:
                raise ValueError(f"matrix axis '{name}' has no values")
        return self

    @property
    def is_empty(self) -> bool:
        return not (self.parameter_sets or self.axes or self.include)


class JobTemplate(BaseModel):
    """Static, pre-expansion definition of one job in the graph."""

    model_config = {"frozen": True, "populate_by_name": True}

    id: str = Field(min_length=1)
    name: Optional[str] = None
    needs: list[str] = []
    condition: JobCondition = JobCondition.ON_SUCCESS
    matrix: Optional[MatrixSpec] = None
    max_parallel: Optional[int] = None
    fail_fast: bool = False
    timeout: float = 30 * 60  # seconds
    concurrency_group: Optional[str] = None
    cancel_in_progress: bool = False
    run: Optional[str] = None
    env: dict[str, str] = {}
    with_: dict[str, Any] = Field(default_factory=dict, alias="with")

    @field_validator("needs", mode="before")
    @classmethod
    def coerce_needs(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [value]
        return value

    @property
    def display_name(self) -> str:
        return self.name or self.id


class ConcurrencySpec(BaseModel):
    model_config = {"frozen": True}

    group: str = Field(min_length=1)
    # None: decided per trigger event (Settings.cancel_in_progress_events)
    cancel_in_progress: Optional[bool] = None


class WorkflowDefinition(BaseModel):
    model_config = {"frozen": True}

    name: str = Field(min_length=1)
    env: dict[str, str] = {}
    concurrency: Optional[ConcurrencySpec] = None
    jobs: list[JobTemplate] = []
