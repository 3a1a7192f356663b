from .helpers import *
from .initialization import *
from .predict import *
