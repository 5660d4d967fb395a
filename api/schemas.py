from typing import Union

from pydantic import BaseModel, ConfigDict, Field

# Catalog ids double as directory names under the videos root
VIDEO_ID_PATTERN = r"^[A-Za-z0-9_-]+$"
MAX_VIDEO_ID_LENGTH = 50


class SecureUrlRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    video_id: str = Field(
        ..., alias="videoId", min_length=1, max_length=MAX_VIDEO_ID_LENGTH, pattern=VIDEO_ID_PATTERN
    )
    user_id: Union[int, str] = Field(..., alias="userId")


class SecureUrlResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    stream_url: str = Field(..., serialization_alias="streamUrl")
    token: str
    expires_in: int = Field(..., serialization_alias="expiresIn")

