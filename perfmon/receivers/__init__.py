from .manager import AlertManager

__all__ = ['AlertManager']
