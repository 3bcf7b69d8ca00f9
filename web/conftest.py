# Makes 'apps', 'config' and 'gateway' (inside web/) importable before collection
import sys
from pathlib import Path

import pytest

BASE_DIR = Path(__file__).resolve().parent  # .../web
p = str(BASE_DIR)
if p not in sys.path:
    sys.path.insert(0, p)


@pytest.fixture(autouse=True)
def use_stubs_for_tests(settings):
    settings.USE_HTTP_ADAPTERS = False
    settings.USE_CACHE_CART_STORAGE = True


@pytest.fixture(autouse=True)
def clear_cache():
    from django.core.cache import cache

    cache.clear()
    yield
    cache.clear()
