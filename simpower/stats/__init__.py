"""Data generation, model construction and fitting modules."""

from . import builder as builder
from . import design as design
from . import extension as extension
from . import fitting as fitting
from . import parametric as parametric
