from .opset import *  # noqa: F401,F403
from .opset import __all__  # noqa: F401
