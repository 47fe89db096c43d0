from krios.resources.base import BaseResource
from krios.resources.profile import ProfileResource
from krios.resources.rooms import RoomsResource

__all__ = ["BaseResource", "ProfileResource", "RoomsResource"]
