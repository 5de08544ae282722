import uvicorn
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

from energy_market.app import create_app
from energy_market.infra.config.settings import get_settings

app = create_app()

if __name__ == "__main__":
    settings = get_settings()
    uvicorn.run(app, host=settings.HOST, port=settings.PORT)
