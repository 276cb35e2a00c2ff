import os

from m365_crawler.api import create_app

app = create_app()

if __name__ == "__main__":
    app.run(host="0.0.0.0", port=int(os.getenv("WORKER_PORT", "5000")))
