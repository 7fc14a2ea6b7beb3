from machine_controller.config import get_settings
from machine_controller.db import init_db
from machine_controller.logging_config import configure_logging


if __name__ == "__main__":
    configure_logging()
    init_db()
    print(f"database ready at {get_settings().database_url}")
