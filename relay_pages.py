"""
relay_pages.py - Terminal pages shown inside the authorization popup.

Both pages speak the Decap CMS popup protocol: a single postMessage to
window.opener of the form ``authorization:github:<status>:<json>``.
The success page is static; its script reads ``token`` and ``origin``
from its own URL so the token is never written into server-rendered HTML.
The error page is a pure function of its inputs.
"""

from __future__ import annotations

import html as html_mod
import json

_STYLE = """
        body { font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', sans-serif;
            background: #0a0a1a; color: #e0e0e0;
            display: flex; justify-content: center; align-items: center;
            min-height: 100vh; margin: 0; }
        .card { background: #1a1a2e; border: 1px solid #2a2a4a; border-radius: 12px;
            padding: 2rem; max-width: 400px; width: 90%;
            box-shadow: 0 4px 24px rgba(0, 0, 0, 0.5); text-align: center; }
        .card.error { border-color: #ff4444; }
        h1 { font-size: 1.3rem; color: #00d4ff; margin: 0 0 1rem 0; }
        .error h1 { color: #ff4444; }
        a { color: #00d4ff; }
        .hidden { display: none; }
"""


def _js_literal(value: str | None) -> str:
    """JSON-encode for a <script> block; '<' is escaped so '</script>' cannot close it."""
    return json.dumps(value).replace("<", "\\u003c")


SUCCESS_PAGE = f"""<!DOCTYPE html>
<html>
<head>
    <title>Decap CMS - Authorized</title>
    <meta name="viewport" content="width=device-width, initial-scale=1">
    <style>{_STYLE}</style>
</head>
<body>
    <div class="card" id="ok">
        <h1>Authorized</h1>
        <p>Returning to the CMS...</p>
    </div>
    <div class="card error hidden" id="fail">
        <h1>Authentication Error</h1>
        <p id="fail-message"></p>
        <p style="margin-top:1.5rem"><a href="javascript:window.close()">Close this window</a></p>
    </div>
    <script>
    (function () {{
        var params = new URLSearchParams(window.location.search);
        var token = params.get("token");
        var origin = params.get("origin");

        function fail(message) {{
            document.getElementById("ok").classList.add("hidden");
            document.getElementById("fail").classList.remove("hidden");
            document.getElementById("fail-message").textContent = message;
        }}

        if (!token) {{
            fail("No access token was received.");
            return;
        }}
        if (!origin || origin === "*") {{
            fail("Refusing to send the access token: the CMS origin is missing or invalid.");
            return;
        }}
        if (!window.opener) {{
            fail("The CMS window that opened this popup is no longer available.");
            return;
        }}

        var payload = JSON.stringify({{ token: token, provider: "github" }});
        window.opener.postMessage("authorization:github:success:" + payload, origin);
        window.close();
    }})();
    </script>
</body>
</html>"""


def render_error_page(message: str, origin: str | None) -> str:
    """Render the error terminal. Same inputs always give the same bytes."""
    safe_msg = html_mod.escape(message)
    return f"""<!DOCTYPE html>
<html>
<head>
    <title>Decap CMS - Authentication Error</title>
    <meta name="viewport" content="width=device-width, initial-scale=1">
    <style>{_STYLE}</style>
</head>
<body>
    <div class="card error">
        <h1>Authentication Error</h1>
        <p>{safe_msg}</p>
        <p style="margin-top:1.5rem"><a href="javascript:window.close()">Close this window</a></p>
    </div>
    <script>
    (function () {{
        var message = {_js_literal(message)};
        var origin = {_js_literal(origin)};
        if (!origin || origin === "*" || !window.opener) {{
            return;
        }}
        var payload = JSON.stringify({{ message: message, provider: "github" }});
        window.opener.postMessage("authorization:github:error:" + payload, origin);
    }})();
    </script>
</body>
</html>"""
