"""
Load Options.
"""

from typing import Any, Dict, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, StrictBool, StrictFloat, StrictInt, StrictStr
from pydantic import ValidationError

from modelcarton.core.exceptions import ValidationFailed


RunnerOptValue = Union[StrictBool, StrictInt, StrictFloat, StrictStr]


class LoadOpts(BaseModel):
    """
    Options for ``load`` and ``load_unpacked``.

    Example:
        opts = LoadOpts(
            visible_device="cpu",
            override_runner_opts={"threads": 4},
            override_required_framework_version=">=2.0, <3",
        )
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    visible_device: Optional[Union[StrictInt, StrictStr]] = Field(
        default=None, description="Device selector; None picks GPU 0 or CPU",
    )
    override_runner_opts: Optional[Dict[str, RunnerOptValue]] = Field(
        default=None, description="Shallow overlay over the packed runner opts",
    )
    override_required_framework_version: Optional[str] = Field(
        default=None, description="Replaces the packed framework version range",
    )
    override_runner_name: Optional[str] = Field(
        default=None, description="Replaces the packed runner name",
    )

    @classmethod
    def coerce(cls, opts: Union["LoadOpts", Mapping[str, Any], None]) -> "LoadOpts":
        """
        Accept a LoadOpts, a plain mapping or None.

        Raises:
            ValidationFailed: If the mapping is not valid load options
        """
        if opts is None:
            return cls()
        if isinstance(opts, cls):
            return opts
        try:
            return cls.model_validate(dict(opts))
        except (ValidationError, TypeError, ValueError) as e:
            if isinstance(e, ValidationError):
                errors = [
                    f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}"
                    for err in e.errors()
                ]
            else:
                errors = [str(e)]
            raise ValidationFailed("load options", errors)
