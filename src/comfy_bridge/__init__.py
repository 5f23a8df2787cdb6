"""Bridge between chat front-ends and a ComfyUI image-generation backend."""

__version__ = "0.1.0"
