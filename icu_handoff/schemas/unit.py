from pydantic import BaseModel


class Unit(BaseModel):
    id: str
    name: str
    bed_count: int = 0
