from notiflow.notifications.renderer import TemplateRenderer

__all__ = ["TemplateRenderer"]
