from .cnn import *
from .discretisation import *
from .noise import *
from .setcnn import *
