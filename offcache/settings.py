from pathlib import Path
from typing import List, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix='OFFCACHE_', env_file='.env', extra='ignore')

    # Site
    origin: str = 'http://localhost:8000'
    cache_version: str = 'v2'
    static_cache_prefix: str = 'static'
    dynamic_cache_prefix: str = 'dynamic'

    # Install manifest, fetched into the static bucket in this order.
    static_assets: List[str] = [
        '/',
        '/index.html',
        '/critical.css',
        '/styles.css',
        '/script-optimized.js',
        '/manifest.json',
    ]
    # Third-party resources pre-cached into the dynamic bucket.
    external_resources: List[str] = [
        'https://fonts.googleapis.com/css2?family=Inter:wght@300;400;500;600;700&display=swap',
    ]

    # Classification
    external_hosts: List[str] = [
        'fonts.googleapis.com',
        'fonts.gstatic.com',
        'cdnjs.cloudflare.com',
        'unsplash.com',
    ]
    api_markers: List[str] = ['/api/']
    form_hosts: List[str] = ['sendgrid.com']

    # Storage
    cache_directory: Path = Path('.offcache') / 'caches'
    queue_directory: Path = Path('.offcache') / 'requests'
    cache_directory_levels: int = 2

    # Network
    fetch_timeout: Optional[float] = None  # None leaves timeouts to the HTTP stack
    background_workers: int = 4

    # Lifecycle
    skip_waiting: bool = False

    # Retry queue
    max_replay_attempts: Optional[int] = None  # None retries forever
    sync_tag: str = 'contact-form'
    cache_update_tag: str = 'cache-update'

    @property
    def static_cache_name(self) -> str:
        return '{}-{}'.format(self.static_cache_prefix, self.cache_version)

    @property
    def dynamic_cache_name(self) -> str:
        return '{}-{}'.format(self.dynamic_cache_prefix, self.cache_version)
