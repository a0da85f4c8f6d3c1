import os
import sys
from pathlib import Path

ROOT_DIR = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT_DIR))

os.environ.setdefault("SHOPIFY_API_KEY", "test_key")
os.environ.setdefault("SHOPIFY_API_SECRET", "test_secret")
os.environ.setdefault("SHOPIFY_SCOPES", "read_orders,write_discounts")
os.environ.setdefault("BACKEND_URL", "https://api.example.com")
os.environ.setdefault("STATE_DB_URL", "sqlite:///./test_shop_connect.db")
