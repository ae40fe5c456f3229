from typing import Optional, TypedDict


class UserDocument(TypedDict, total=False):

    _id: str
    email: Optional[str]
    display_name: Optional[str]
    profile_image_url: Optional[str]
