from __future__ import annotations

import json
import re


DEV_SERVER_PORT = 3001


def _package_name(project_id: str) -> str:
    slug = re.sub(r"[^a-z0-9-]+", "-", project_id.lower()).strip("-")
    return f"preview-{slug}" if slug else "previewhub-preview-project"


def default_scaffold(project_id: str) -> dict[str, str]:
    # Minimal runnable Vite + React project used when nothing else hydrates.
    package = {
        "name": _package_name(project_id),
        "private": True,
        "version": "0.0.0",
        "type": "module",
        "scripts": {
            "dev": f"vite --host 0.0.0.0 --port {DEV_SERVER_PORT} --strictPort",
            "build": "vite build",
            "preview": "vite preview",
        },
        "dependencies": {"react": "^18.2.0", "react-dom": "^18.2.0"},
        "devDependencies": {"@vitejs/plugin-react": "^4.0.3", "vite": "^4.4.5"},
    }
    return {
        "package.json": json.dumps(package, indent=2) + "\n",
        "index.html": (
            "<!doctype html>\n"
            '<html lang="en">\n'
            "  <head>\n"
            '    <meta charset="UTF-8" />\n'
            '    <meta name="viewport" content="width=device-width, initial-scale=1.0" />\n'
            "    <title>Preview</title>\n"
            "  </head>\n"
            "  <body>\n"
            '    <div id="root"></div>\n'
            '    <script type="module" src="/src/main.jsx"></script>\n'
            "  </body>\n"
            "</html>\n"
        ),
        "vite.config.js": (
            "import { defineConfig } from 'vite'\n"
            "import react from '@vitejs/plugin-react'\n"
            "\n"
            "export default defineConfig({\n"
            "  plugins: [react()],\n"
            "  server: {\n"
            "    host: '0.0.0.0',\n"
            f"    port: {DEV_SERVER_PORT},\n"
            "    strictPort: true,\n"
            "  },\n"
            "})\n"
        ),
        "src/main.jsx": (
            "import React from 'react'\n"
            "import ReactDOM from 'react-dom/client'\n"
            "import App from './App.jsx'\n"
            "\n"
            "ReactDOM.createRoot(document.getElementById('root')).render(\n"
            "  <React.StrictMode>\n"
            "    <App />\n"
            "  </React.StrictMode>,\n"
            ")\n"
        ),
        "src/App.jsx": (
            "function App() {\n"
            "  return (\n"
            "    <div style={{ padding: '20px', fontFamily: 'system-ui, sans-serif' }}>\n"
            "      <h1>Welcome to your Preview!</h1>\n"
            "      <p>Your project files are being synchronized.</p>\n"
            "    </div>\n"
            "  )\n"
            "}\n"
            "\n"
            "export default App\n"
        ),
    }
