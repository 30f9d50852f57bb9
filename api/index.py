from mangum import Mangum
import sys
import os

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from earnings.api import create_app
from earnings.config import get_settings
from earnings.container import build_services
from earnings.logging_config import setup_logging

settings = get_settings()
setup_logging(settings.LOG_LEVEL)

app = create_app(build_services(settings), root_path="/api")

handler = Mangum(app)
