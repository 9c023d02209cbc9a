from .renderer import RenderResult, SeleniumRenderer

__all__ = ["RenderResult", "SeleniumRenderer"]
