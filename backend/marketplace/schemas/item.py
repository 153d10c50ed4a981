from pydantic import BaseModel, ConfigDict, Field

MAX_GALLERY_IMAGES = 5


class ItemForm(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    title: str = Field(min_length=1, max_length=200)
    desc: str = ""
    cat: str = ""
    link: str = ""
    youtube: str = ""
    originalCreator: str = ""
    img: str = ""
    gallery: list[str] = Field(default_factory=list, max_length=MAX_GALLERY_IMAGES)


class RatingIn(BaseModel):
    rating: int = Field(ge=1, le=5)
    review: str | None = Field(default=None, max_length=2000)
