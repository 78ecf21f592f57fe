from __future__ import annotations

from typing import Optional, Union

from pydantic import BaseModel


class DimensionFilterModel(BaseModel):
    campus: Optional[str] = "All"
    year: Optional[Union[int, str]] = "All"
    building: Optional[str] = None
    room: Optional[str] = None
