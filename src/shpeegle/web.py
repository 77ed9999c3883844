from __future__ import annotations

import asyncio
import logging
import re
import threading
from dataclasses import dataclass
from pathlib import Path

from fastapi import Body, FastAPI, File, HTTPException, UploadFile
from fastapi.responses import HTMLResponse, JSONResponse

from .archive import BookOpenError
from .book import BookSession, open_book
from .library import LibraryStore
from .strategies import ChapterReader, ChapterView, ProgressUpdate, WholeBookReader
from .theme import render_document

logger = logging.getLogger(__name__)

READING_MODES = ("chapter", "book")


@dataclass(slots=True)
class WebConfig:
    library_path: Path
    mode: str = "chapter"
    host: str = "127.0.0.1"
    port: int = 2047
    upload_dir: Path | None = None


@dataclass(slots=True)
class OpenBook:
    session: BookSession
    mode: str
    chapter: ChapterReader
    book: WholeBookReader


INDEX_HTML = """<!DOCTYPE html>
<html lang="en">
<head>
  <meta charset="utf-8">
  <title>Shpeegle Reader</title>
  <meta name="viewport" content="width=device-width, initial-scale=1">
  <style>
    :root { color-scheme: dark; }
    body {
      margin: 0;
      font-family: system-ui, sans-serif;
      background: #0a0a0c;
      color: #e4e4ec;
      display: grid;
      grid-template-columns: 18rem 1fr;
      height: 100vh;
    }
    aside { border-right: 1px solid #2a2a32; overflow-y: auto; padding: 1rem; }
    main { display: flex; flex-direction: column; min-height: 0; }
    header { display: flex; gap: 0.5rem; align-items: center; padding: 0.5rem 1rem; border-bottom: 1px solid #2a2a32; }
    header .label { flex: 1; opacity: 0.8; }
    button { background: #1a1a1f; color: inherit; border: 1px solid #2a2a32; border-radius: 4px; padding: 0.3rem 0.7rem; cursor: pointer; }
    button:hover { border-color: #7c3aed; }
    iframe { flex: 1; border: none; width: 100%; background: #0a0a0c; }
    .book { padding: 0.4rem 0; cursor: pointer; }
    .book small { display: block; opacity: 0.6; }
    .toc a { color: #8b5cf6; text-decoration: none; display: block; padding: 0.15rem 0; }
    .toc ul { list-style: none; padding-left: 0.8rem; margin: 0; }
    .error { color: #f87171; }
  </style>
</head>
<body>
  <aside>
    <h3>Library</h3>
    <input type="file" id="upload" accept=".epub">
    <div id="books"></div>
    <h3>Contents</h3>
    <div id="toc" class="toc"></div>
  </aside>
  <main>
    <header>
      <button id="prev">&larr;</button>
      <span class="label" id="label">No book open</span>
      <select id="mode"><option value="chapter">Chapter</option><option value="book">Whole book</option></select>
      <button id="next">&rarr;</button>
    </header>
    <div id="status" class="error"></div>
    <iframe id="viewer" sandbox="allow-same-origin"></iframe>
  </main>
  <script>
    const $ = (id) => document.getElementById(id);
    let mode = "chapter";

    async function api(path, options = {}) {
      const response = await fetch(path, options);
      const body = await response.json().catch(() => ({}));
      if (!response.ok) {
        throw new Error(body.detail || response.statusText);
      }
      return body;
    }

    function json(method, payload) {
      return { method, headers: { "Content-Type": "application/json" }, body: JSON.stringify(payload) };
    }

    function renderToc(items) {
      const list = document.createElement("ul");
      for (const item of items) {
        const li = document.createElement("li");
        const link = document.createElement("a");
        link.textContent = item.label;
        link.href = "#";
        link.onclick = (event) => { event.preventDefault(); jump(item.href); };
        li.appendChild(link);
        if (item.subitems.length) li.appendChild(renderToc(item.subitems));
        list.appendChild(li);
      }
      return list;
    }

    async function refreshLibrary() {
      const data = await api("/api/library");
      const container = $("books");
      container.innerHTML = "";
      for (const book of data.books) {
        const row = document.createElement("div");
        row.className = "book";
        row.textContent = book.title;
        const meta = document.createElement("small");
        meta.textContent = `${book.author || ""} ${Math.round(book.progress * 100)}%`;
        row.appendChild(meta);
        row.onclick = () => openBook(book.path);
        container.appendChild(row);
      }
    }

    async function showDocument() {
      $("viewer").src = `/api/session/document?mode=${mode}&t=${Date.now()}`;
    }

    async function afterOpen(session) {
      mode = session.mode;
      $("mode").value = mode;
      $("toc").innerHTML = "";
      $("toc").appendChild(renderToc(session.toc));
      $("label").textContent = session.metadata.title;
      await showDocument();
      await refreshLibrary();
    }

    async function openBook(path) {
      try {
        $("status").textContent = "";
        await afterOpen(await api("/api/books/open", json("POST", { path, mode })));
      } catch (error) {
        $("status").textContent = error.message;
      }
    }

    async function turn(step) {
      if (mode !== "chapter") return;
      const view = await api("/api/session/advance", json("POST", { step }));
      if (view.label) $("label").textContent = view.label;
      await showDocument();
    }

    async function jump(href) {
      const result = await api("/api/session/jump", json("POST", { href, mode }));
      if (mode === "chapter") {
        if (result.label) $("label").textContent = result.label;
        await showDocument();
      } else if (result.section) {
        const doc = $("viewer").contentDocument;
        const target = doc && doc.getElementById(result.section);
        if (target) target.scrollIntoView();
      }
    }

    $("prev").onclick = () => turn(-1);
    $("next").onclick = () => turn(1);
    $("mode").onchange = async (event) => { mode = event.target.value; await showDocument(); };
    $("upload").onchange = async (event) => {
      const file = event.target.files[0];
      if (!file) return;
      const form = new FormData();
      form.append("file", file);
      try {
        $("status").textContent = "";
        await afterOpen(await api("/api/books/upload", { method: "POST", body: form }));
      } catch (error) {
        $("status").textContent = error.message;
      }
    };
    $("viewer").onload = async () => {
      const win = $("viewer").contentWindow;
      if (!win || mode !== "book") return;
      const session = await api("/api/session");
      const max = win.document.documentElement.scrollHeight - win.innerHeight;
      win.scrollTo(0, max * session.book.progress);
      let timer = null;
      win.addEventListener("scroll", () => {
        clearTimeout(timer);
        timer = setTimeout(() => {
          const max = win.document.documentElement.scrollHeight - win.innerHeight;
          const fraction = max > 0 ? win.scrollY / max : 0;
          api("/api/session/scroll", json("POST", { fraction }));
        }, 400);
      });
    };
    document.addEventListener("keydown", (event) => {
      if (event.key === "ArrowLeft") turn(-1);
      if (event.key === "ArrowRight") turn(1);
    });

    refreshLibrary().then(async () => {
      const data = await api("/api/library");
      if (data.last_read) openBook(data.last_read);
    });
  </script>
</body>
</html>
"""

_UNSAFE_FILENAME_CHARS = re.compile(r"[^\w.\- ]+", re.UNICODE)


def _sanitize_filename(name: str) -> str:
    cleaned = _UNSAFE_FILENAME_CHARS.sub("_", Path(name).name).strip(" .")
    return cleaned or "upload.epub"


def _normalize_mode(value: object, default: str) -> str:
    if isinstance(value, str) and value in READING_MODES:
        return value
    return default


def _book_entry(path: str, session: BookSession) -> dict[str, object]:
    metadata = session.metadata
    return {
        "path": path,
        "title": metadata.title,
        "author": metadata.author,
        "cover": metadata.cover.data_uri if metadata.cover is not None else None,
    }


def _session_payload(current: OpenBook) -> dict[str, object]:
    session = current.session
    metadata = session.metadata
    return {
        "path": session.path,
        "mode": current.mode,
        "metadata": {
            "title": metadata.title,
            "author": metadata.author,
            "language": metadata.language,
            "publisher": metadata.publisher,
            "identifier": metadata.identifier,
        },
        "toc": [node.as_dict() for node in session.toc],
        "spine": [
            {"index": entry.index, "path": entry.path, "linear": entry.linear}
            for entry in session.spine
        ],
        "chapter": {
            "index": current.chapter.index,
            "progress": current.chapter.progress,
        },
        "book": {"progress": current.book.progress, "loading": current.book.loading},
    }


def _restore_readers(session: BookSession, saved: dict[str, object] | None) -> tuple[ChapterReader, WholeBookReader]:
    index: int | None = None
    fraction: float | None = None
    if saved:
        position = saved.get("position")
        if saved.get("mode") == "chapter" and isinstance(position, int):
            index = position
        elif saved.get("mode") == "book" and isinstance(position, (int, float)):
            fraction = float(position)
    return ChapterReader(session, initial_index=index), WholeBookReader(session, initial_fraction=fraction)


def create_app(config: WebConfig) -> FastAPI:
    library_path = Path(config.library_path).expanduser()
    upload_dir = (
        Path(config.upload_dir).expanduser()
        if config.upload_dir is not None
        else library_path.parent / "books"
    )
    default_mode = _normalize_mode(config.mode, "chapter")
    library = LibraryStore(library_path)

    app = FastAPI(title="Shpeegle Reader")
    app.state.config = config
    app.state.library = library
    app.state.current = None
    session_lock = threading.Lock()

    def _current() -> OpenBook:
        current = app.state.current
        if current is None or current.session.closed:
            raise HTTPException(status_code=404, detail="No book is open.")
        return current

    def _close_current() -> None:
        with session_lock:
            current = app.state.current
            app.state.current = None
        if current is not None:
            current.session.close()

    def _persist(update: ProgressUpdate) -> None:
        library.record_progress(
            update.book_path,
            update.position,
            update.progress,
            mode=update.mode,
        )

    async def _open_path(path: Path, mode: str) -> JSONResponse:
        try:
            data = path.read_bytes()
        except OSError as exc:
            raise HTTPException(status_code=404, detail=f"Book not found: {path}") from exc
        key = str(path)
        loop = asyncio.get_running_loop()
        try:
            session = await loop.run_in_executor(None, open_book, data, key)
        except BookOpenError as exc:
            logger.warning("Could not open %s: %s", key, exc)
            raise HTTPException(status_code=422, detail=exc.user_message) from exc
        saved = library.get(key)
        chapter, book = _restore_readers(session, saved)
        library.add_book(_book_entry(key, session))
        opened = OpenBook(session=session, mode=mode, chapter=chapter, book=book)
        _close_current()
        with session_lock:
            app.state.current = opened
        return JSONResponse(_session_payload(opened))

    @app.get("/", response_class=HTMLResponse)
    def index() -> HTMLResponse:
        return HTMLResponse(INDEX_HTML)

    @app.get("/api/library")
    def api_library() -> JSONResponse:
        return JSONResponse(library.snapshot())

    @app.put("/api/settings")
    def api_settings(payload: dict[str, object] = Body(...)) -> JSONResponse:
        if not isinstance(payload, dict):
            raise HTTPException(status_code=400, detail="Invalid payload.")
        settings = library.settings().merged(payload)
        library.save_settings(settings)
        return JSONResponse(settings.as_payload())

    @app.post("/api/books/open")
    async def api_open_book(payload: dict[str, object] = Body(...)) -> JSONResponse:
        if not isinstance(payload, dict):
            raise HTTPException(status_code=400, detail="Invalid payload.")
        raw_path = payload.get("path")
        if not isinstance(raw_path, str) or not raw_path.strip():
            raise HTTPException(status_code=400, detail="path is required.")
        mode = _normalize_mode(payload.get("mode"), default_mode)
        return await _open_path(Path(raw_path).expanduser(), mode)

    @app.post("/api/books/upload")
    async def api_upload_book(file: UploadFile = File(...)) -> JSONResponse:
        filename = file.filename or "upload.epub"
        if Path(filename).suffix.lower() != ".epub":
            raise HTTPException(status_code=400, detail="Only .epub files are supported.")
        upload_dir.mkdir(parents=True, exist_ok=True)
        target = upload_dir / _sanitize_filename(filename)
        try:
            with target.open("wb") as destination:
                while True:
                    chunk = await file.read(1024 * 1024)
                    if not chunk:
                        break
                    destination.write(chunk)
        except OSError as exc:
            raise HTTPException(status_code=500, detail=f"Failed to save upload: {exc}") from exc
        finally:
            await file.close()
        return await _open_path(target, default_mode)

    @app.delete("/api/books")
    def api_remove_book(payload: dict[str, object] = Body(...)) -> JSONResponse:
        if not isinstance(payload, dict):
            raise HTTPException(status_code=400, detail="Invalid payload.")
        path = payload.get("path")
        if not isinstance(path, str) or not path:
            raise HTTPException(status_code=400, detail="path is required.")
        current = app.state.current
        if current is not None and current.session.path == path:
            _close_current()
        if not library.remove_book(path):
            raise HTTPException(status_code=404, detail="Book not found in library.")
        return JSONResponse({"removed": True, "path": path})

    @app.get("/api/session")
    def api_session() -> JSONResponse:
        return JSONResponse(_session_payload(_current()))

    def _missing_view(current: OpenBook) -> HTTPException:
        if not current.session.spine:
            return HTTPException(status_code=404, detail="This book has no readable content.")
        return HTTPException(status_code=409, detail="Superseded by a newer request.")

    def _chapter_response(current: OpenBook, view: ChapterView | None) -> JSONResponse:
        if view is None:
            raise _missing_view(current)
        _persist(current.chapter.progress_update())
        return JSONResponse(view.as_payload())

    @app.get("/api/session/chapter")
    async def api_chapter(index: int | None = None) -> JSONResponse:
        current = _current()
        if index is not None and not 0 <= index < len(current.session.spine):
            raise HTTPException(status_code=400, detail="index out of range.")
        view = await current.chapter.show(index)
        return _chapter_response(current, view)

    @app.post("/api/session/advance")
    async def api_advance(payload: dict[str, object] = Body(...)) -> JSONResponse:
        current = _current()
        step = payload.get("step") if isinstance(payload, dict) else None
        if not isinstance(step, int) or isinstance(step, bool):
            raise HTTPException(status_code=400, detail="step must be an integer.")
        view = await current.chapter.turn(step)
        return _chapter_response(current, view)

    @app.post("/api/session/jump")
    async def api_jump(payload: dict[str, object] = Body(...)) -> JSONResponse:
        current = _current()
        if not isinstance(payload, dict):
            raise HTTPException(status_code=400, detail="Invalid payload.")
        href = payload.get("href")
        if not isinstance(href, str) or not href:
            raise HTTPException(status_code=400, detail="href is required.")
        mode = _normalize_mode(payload.get("mode"), current.mode)
        if mode == "book":
            section = current.book.section_for_href(href)
            return JSONResponse({"matched": section is not None, "section": section})
        before = current.chapter.index
        matched = current.chapter.jump_to_href(href)
        if not matched:
            # Unresolvable targets leave the reader where it was.
            return JSONResponse({"matched": False, "index": before})
        view = await current.chapter.show()
        return _chapter_response(current, view)

    @app.get("/api/session/book")
    async def api_whole_book() -> JSONResponse:
        current = _current()
        view = await current.book.load()
        payload = view.as_payload()
        payload["progress"] = current.book.progress
        return JSONResponse(payload)

    @app.post("/api/session/scroll")
    def api_scroll(payload: dict[str, object] = Body(...)) -> JSONResponse:
        current = _current()
        fraction = payload.get("fraction") if isinstance(payload, dict) else None
        if not isinstance(fraction, (int, float)) or isinstance(fraction, bool):
            raise HTTPException(status_code=400, detail="fraction must be a number.")
        update = current.book.record_scroll(fraction)
        _persist(update)
        return JSONResponse(update.as_payload())

    @app.get("/api/session/document", response_class=HTMLResponse)
    async def api_document(mode: str | None = None, index: int | None = None) -> HTMLResponse:
        current = _current()
        selected = _normalize_mode(mode, current.mode)
        settings = library.settings()
        title = current.session.metadata.title
        if selected == "book":
            view = await current.book.load()
            return HTMLResponse(render_document(view.markup, settings, title))
        if index is not None and not 0 <= index < len(current.session.spine):
            raise HTTPException(status_code=400, detail="index out of range.")
        chapter = current.chapter.current
        if chapter is None or index is not None or chapter.index != current.chapter.index:
            chapter = await current.chapter.show(index)
            if chapter is None:
                raise _missing_view(current)
            _persist(current.chapter.progress_update())
        return HTMLResponse(render_document(chapter.markup, settings, f"{title} - {chapter.label}"))

    @app.post("/api/session/close")
    def api_close() -> JSONResponse:
        current = app.state.current
        if current is None:
            return JSONResponse({"closed": False})
        _close_current()
        return JSONResponse({"closed": True, "path": current.session.path})

    return app
