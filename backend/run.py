import os

import uvicorn
from dotenv import load_dotenv

# Load environment variables before the package reads its settings
load_dotenv()

from renewal_tracker.config import settings  # noqa: E402

if __name__ == "__main__":
    host = os.getenv("API_HOST", "0.0.0.0")
    port = int(os.getenv("API_PORT", "8009"))
    reload = os.getenv("API_RELOAD", "true").lower() == "true"

    # The factory creates tables and the log sink in the serving process
    uvicorn.run(
        "renewal_tracker:create_app",
        factory=True,
        host=host,
        port=port,
        reload=reload,
        log_level=settings.LOG_LEVEL.lower(),
    )
