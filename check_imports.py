import importlib
modules = [
    'programlock.lib.config',
    'programlock.lib.db_lock',
    'programlock.services.repository',
    'programlock.services.sweeper',
    'programlock.cli',
]
for m in modules:
    try:
        importlib.import_module(m)
        print('import ok:', m)
    except Exception as e:
        print('import FAILED:', m, e)
        raise
print('done')
