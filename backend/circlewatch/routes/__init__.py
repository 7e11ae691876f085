from importlib import import_module

modules = [
    'checkins',
    'users',
    'circle',
    'alerts',
    'voice',
]

for m in modules:
    import_module(f'.{m}', __name__)

__all__ = modules
