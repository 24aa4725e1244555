"""Bridge between a MuJoCo simulation and an ONNX depth locomotion policy."""

__version__ = "0.1.0"
