from .base import *
from .convnp import *
from .helpers import *
