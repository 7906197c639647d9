from .captcha import CaptchaSolver
from .detector import detect
from .driver import PageDriver, PlaywrightDriver
from .scraper import PrescriptionScraper
from .selectors import PortalSelectors
from .session import SessionController
from .worker import BrowserWorker

__all__ = [
    "BrowserWorker",
    "CaptchaSolver",
    "PageDriver",
    "PlaywrightDriver",
    "PortalSelectors",
    "PrescriptionScraper",
    "SessionController",
    "detect",
]
