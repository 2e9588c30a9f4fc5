# request headers accepted from cross origin clients
PROXY_HEADERS = (
    'Authorization', 'Cache-Control', 'Content-Type', 'If-Match', 'If-None-Exist',
    'Prefer', 'X-Request-Id')
