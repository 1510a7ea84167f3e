from fastapi import APIRouter
from fastapi.responses import HTMLResponse, PlainTextResponse

from pageproxy.proxy.route import router as proxy_router
from pageproxy.vars import PROXY_PREFIX

router = APIRouter()

LANDING_PAGE = """<!doctype html>
<html lang="en">
<head>
<meta charset="utf-8" />
<title>Web Proxy</title>
<meta name="viewport" content="width=device-width, initial-scale=1" />
<style>
  body{font-family:system-ui; background:#0f172a; color:#e5e7eb; margin:0;}
  .wrap{max-width:880px; margin:40px auto; padding:0 16px;}
  .card{background:#111827; border-radius:12px; padding:24px;}
  h1{margin:0 0 8px; font-size:28px;}
  p{margin:8px 0 16px; color:#9ca3af;}
  .row{display:flex; gap:8px; margin:12px 0 20px;}
  input{flex:1; padding:12px; border-radius:10px; border:1px solid #334155; background:#0b1220; color:#e5e7eb;}
  button{padding:12px 18px; border-radius:10px; background:#3b82f6; color:white; cursor:pointer;}
  iframe{width:100%; height:72vh; border:1px solid #374151; border-radius:12px; margin-top:16px;}
</style>
</head>
<body>
<div class="wrap">
  <div class="card">
    <h1>Browse anywhere</h1>
    <p>A lightweight web proxy for pages, video and live streams</p>
    <div class="row">
      <input id="u" type="text" placeholder="Enter a URL (e.g. https://example.com)" />
      <button id="go">Go</button>
    </div>
    <iframe id="f" src="about:blank"></iframe>
  </div>
</div>
<script>
  const input = document.getElementById('u');
  const frame = document.getElementById('f');
  document.getElementById('go').onclick = () => {
    const v = input.value.trim();
    if (!v) return;
    const u = v.startsWith('http') ? v : 'https://' + v;
    frame.src = '__PROXY_PREFIX__/' + encodeURIComponent(u);
  };
</script>
</body>
</html>
""".replace(
    "__PROXY_PREFIX__", PROXY_PREFIX
)


@router.get("/", response_class=HTMLResponse, include_in_schema=False)
async def landing_page():
    return HTMLResponse(LANDING_PAGE)


@router.get("/healthz", response_class=PlainTextResponse)
async def healthz():
    """Liveness probe: constant body, no upstream calls."""
    return PlainTextResponse("ok")


router.include_router(proxy_router)
