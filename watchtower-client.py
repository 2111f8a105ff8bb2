#!/usr/bin/env python3
try:
    from pyln.wtclient.plugin import plugin
except ModuleNotFoundError as err:
    # OK, something is not installed?
    import json
    import sys
    getmanifest = json.loads(sys.stdin.readline())
    print(json.dumps({'jsonrpc': "2.0",
                      'id': getmanifest['id'],
                      'result': {'disable': str(err)}}))
    sys.exit(1)


try:
    plugin.run()
except (KeyboardInterrupt, SystemExit):
    pass
