from .base import OPERATIONS, get_operation, register_operation
from .distributions import *
from .linalg import *
from .shapes import *
from .stable import *
