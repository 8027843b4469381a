"""
The backend: symbolic graph, primitive ops, reverse-mode rules and devices
"""

from alloygrad.backend.engines import CommandQueue, Device, NumPyDevice, TensorData
from alloygrad.backend.llops import Ops, Symbol
from alloygrad.backend.shapes import Shape
from alloygrad.backend.tensor_graph import TensorGraph

__all__ = ["CommandQueue", "Device", "NumPyDevice", "Ops", "Shape", "Symbol", "TensorData", "TensorGraph"]
