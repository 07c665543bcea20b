import html as html_mod
import json
from datetime import datetime

from config import APP_NAME
from prompt_utils import MAX_CATEGORY_LENGTH, MAX_PROMPT_LENGTH, MAX_TITLE_LENGTH

HEAD = """<meta charset="UTF-8"><meta name="viewport" content="width=device-width,initial-scale=1.0">
<title>__APP_NAME__</title><link rel="icon" href="/favicon.svg"><script src="https://cdn.tailwindcss.com"></script>"""

FOOTER = """<footer class="border-t border-slate-200 pt-4 mt-8 text-center text-xs text-slate-500">
  Internal Prompt Library for the Team &middot; &copy; __YEAR__
</footer>"""


def _fill(template: str, **values: str) -> str:
    page = template.replace("__HEAD__", HEAD).replace("__FOOTER__", FOOTER)
    page = page.replace("__APP_NAME__", APP_NAME).replace("__YEAR__", str(datetime.now().year))
    for key, value in values.items():
        page = page.replace(f"__{key}__", value)
    return page


def render_login_page(auth_mode: str, company_domain: str, error: str = "") -> str:
    domain = html_mod.escape(company_domain)
    error_html = (f'<p class="mt-4 rounded-lg border border-red-200 bg-red-50 px-4 py-2 text-sm text-red-700">'
                  f'{html_mod.escape(error)}</p>') if error else ""

    if auth_mode == "email":
        form = """
        <h2 class="text-xl font-semibold">Sign in with email</h2>
        <p class="mt-2 text-sm text-slate-600">Access is restricted to @__DOMAIN__ users.</p>
        <form method="post" action="/login/email" class="mx-auto mt-5 max-w-sm space-y-3 text-left">
          <label class="block text-sm font-medium">Email
            <input type="email" name="email" autocomplete="email" required placeholder="you@__DOMAIN__"
                   class="mt-1 w-full rounded-lg border border-slate-300 px-3 py-2 text-sm">
          </label>
          <label class="block text-sm font-medium">Password
            <input type="password" name="password" autocomplete="current-password" required
                   class="mt-1 w-full rounded-lg border border-slate-300 px-3 py-2 text-sm">
          </label>
          <button type="submit" class="w-full rounded-lg bg-slate-900 px-4 py-2 text-sm font-semibold text-white hover:bg-slate-800">
            Sign in with email
          </button>
        </form>"""
    else:
        form = """
        <h2 class="text-xl font-semibold">Sign in with your company Google account</h2>
        <p class="mt-2 text-sm text-slate-600">Access is restricted to @__DOMAIN__ users.</p>
        <a href="/login" class="mt-5 inline-flex items-center gap-2 rounded-lg bg-slate-900 px-4 py-2 text-sm font-semibold text-white hover:bg-slate-800">
          Continue with Google
        </a>"""

    template = """<!DOCTYPE html><html lang="en"><head>__HEAD__</head>
<body class="bg-slate-50 text-slate-900 min-h-screen p-6">
  <div class="max-w-3xl mx-auto space-y-6">
    <header class="rounded-2xl border border-slate-200 bg-white p-6 shadow-sm">
      <h1 class="text-3xl font-bold tracking-tight">🎺 __APP_NAME__</h1>
      <p class="mt-1 text-sm text-slate-600">Internal Prompt Library for the Team</p>
    </header>
    <section class="rounded-2xl border border-slate-200 bg-white p-8 text-center shadow-sm">
      __FORM__
      __ERROR__
    </section>
    __FOOTER__
  </div>
</body></html>"""
    return _fill(template, FORM=form, ERROR=error_html).replace("__DOMAIN__", domain)


def render_gallery_page(user_email: str, user_id: str) -> str:
    template = """<!DOCTYPE html><html lang="en"><head>__HEAD__
<style>
  mark.var { background: #ffedd5; color: #7c2d12; border-radius: 4px; padding: 0 2px; }
  .clamp { display: -webkit-box; -webkit-line-clamp: 4; -webkit-box-orient: vertical; overflow: hidden; }
</style></head>
<body class="bg-slate-50 text-slate-900 min-h-screen p-4 md:p-6">
  <div class="max-w-6xl mx-auto space-y-6">
    <header class="flex flex-wrap items-center justify-between gap-4 rounded-2xl border border-slate-200 bg-white p-6 shadow-sm">
      <div>
        <h1 class="text-3xl font-bold tracking-tight">🎺 __APP_NAME__</h1>
        <p class="mt-1 text-sm text-slate-600">Internal Prompt Library for the Team</p>
      </div>
      <div class="flex items-center gap-3">
        <span class="text-sm text-slate-500">__USER_EMAIL__</span>
        <a href="/logout" class="rounded-lg border border-slate-300 px-3 py-2 text-sm font-medium hover:bg-slate-50">Sign out</a>
      </div>
    </header>

    <section class="flex flex-wrap items-center gap-3 rounded-2xl border border-slate-200 bg-white p-4 shadow-sm">
      <input id="query" placeholder="Search titles, content, or tags..." oninput="scheduleLoad()"
             class="min-w-[260px] flex-1 rounded-lg border border-slate-300 px-3 py-2 text-sm">
      <select id="sortBy" onchange="loadPrompts()" class="rounded-lg border border-slate-300 px-3 py-2 text-sm">
        <option value="noise">Noise Level</option>
        <option value="newest" selected>Newest</option>
        <option value="echoed">Most Echoed</option>
      </select>
      <button onclick="openComposer({})" class="rounded-lg bg-orange-500 px-4 py-2 text-sm font-semibold text-white hover:bg-orange-600">
        + Submit new prompt
      </button>
    </section>

    <p id="loading" class="text-sm text-slate-500">Loading prompts...</p>
    <p id="error" class="hidden rounded-lg border border-red-200 bg-red-50 px-4 py-2 text-sm text-red-700"></p>
    <section id="grid" class="grid grid-cols-1 gap-4 sm:grid-cols-2 xl:grid-cols-3"></section>
    __FOOTER__
  </div>

  <div id="composer" class="hidden fixed inset-0 z-50 overflow-y-auto bg-slate-900/40 p-4">
    <div class="mx-auto max-w-2xl rounded-2xl bg-white p-6 shadow-lg">
      <div class="mb-4 flex items-center justify-between">
        <h2 id="composerTitle" class="text-xl font-semibold">Compose Prompt</h2>
        <button onclick="closeComposer()" class="rounded-md p-1 text-slate-500 hover:bg-slate-100">✕</button>
      </div>
      <form onsubmit="submitPrompt(event)" class="space-y-4">
        <label class="block text-sm font-medium">Title
          <input id="fTitle" maxlength="__MAX_TITLE__" required class="mt-1 w-full rounded-lg border border-slate-300 px-3 py-2 text-sm">
        </label>
        <label class="block text-sm font-medium">Category
          <input id="fCategory" maxlength="__MAX_CATEGORY__" required class="mt-1 w-full rounded-lg border border-slate-300 px-3 py-2 text-sm">
        </label>
        <label class="block text-sm font-medium">Prompt Text
          <textarea id="fContent" rows="8" maxlength="__MAX_PROMPT__" required oninput="scheduleVariables()"
                    class="mt-1 w-full rounded-lg border border-slate-300 px-3 py-2 text-sm"></textarea>
        </label>
        <p class="text-xs text-slate-500"><span id="charCount">0</span>/__MAX_PROMPT__ characters
          &middot; <button type="button" onclick="suggest('title')" class="underline">Suggest title</button>
          &middot; <button type="button" onclick="suggest('category')" class="underline">Suggest category</button></p>
        <div class="rounded-lg border border-slate-200 bg-slate-50 p-3">
          <p class="mb-2 text-xs font-semibold uppercase tracking-wide text-slate-500">Detected Variables</p>
          <div id="variables" class="flex flex-wrap gap-2 text-sm text-slate-500"></div>
        </div>
        <div class="rounded-lg border border-slate-200 p-3">
          <p class="mb-2 text-xs font-semibold uppercase tracking-wide text-slate-500">Preview</p>
          <p id="preview" class="whitespace-pre-wrap text-sm text-slate-700"></p>
        </div>
        <div class="flex justify-end gap-2">
          <button type="button" onclick="closeComposer()" class="rounded-lg border border-slate-300 px-3 py-2 text-sm">Cancel</button>
          <button id="saveBtn" type="submit" class="rounded-lg bg-orange-500 px-4 py-2 text-sm font-semibold text-white">Publish Prompt</button>
        </div>
      </form>
    </div>
  </div>

  <script>
    const CURRENT_USER_ID = __USER_ID_JS__;
    let prompts = [];
    let draft = {};
    let loadTimer = null;
    let varTimer = null;

    function escapeHTML(s) {
      return String(s ?? '').replace(/&/g,'&amp;').replace(/</g,'&lt;').replace(/>/g,'&gt;').replace(/"/g,'&quot;').replace(/'/g,'&#39;');
    }
    function showError(msg) {
      const el = document.getElementById('error');
      el.textContent = msg || '';
      el.classList.toggle('hidden', !msg);
    }
    async function api(url, options) {
      const res = await fetch(url, options);
      const data = await res.json().catch(() => ({}));
      if (!res.ok) throw new Error(data.detail || 'Request failed.');
      return data;
    }
    function scheduleLoad() { clearTimeout(loadTimer); loadTimer = setTimeout(loadPrompts, 250); }

    async function loadPrompts(refresh) {
      const q = encodeURIComponent(document.getElementById('query').value);
      const sort = document.getElementById('sortBy').value;
      try {
        const data = await api(`/api/prompts?q=${q}&sort=${sort}${refresh ? '&refresh=true' : ''}`);
        prompts = data.prompts;
        showError(data.warning);
        renderGrid();
      } catch (e) { showError(e.message); }
      document.getElementById('loading').classList.add('hidden');
    }

    function renderGrid() {
      document.getElementById('grid').innerHTML = prompts.map(p => {
        const owner = p.author_id === CURRENT_USER_ID;
        const ownerButtons = owner ? `
          <button onclick="openEdit('${p.id}')" class="rounded-md border border-slate-300 px-2 py-1 text-xs">Edit</button>
          <button onclick="deletePrompt('${p.id}')" class="rounded-md border border-red-300 px-2 py-1 text-xs text-red-700">Delete</button>` : '';
        return `<article class="flex flex-col justify-between rounded-2xl border border-slate-200 bg-white p-4 shadow-sm">
          <div>
            <div class="mb-3 flex items-center justify-between gap-2">
              <span class="rounded-full bg-emerald-50 px-2 py-1 text-xs font-semibold uppercase text-emerald-700">${escapeHTML(p.category)}</span>
              <span class="text-xs text-slate-500">by ${escapeHTML(p.author_name || 'Unknown')}</span>
            </div>
            <h3 class="text-lg font-semibold">${escapeHTML(p.title)}</h3>
            <p class="clamp mt-2 text-sm text-slate-700">${escapeHTML(p.content)}</p>
          </div>
          <div class="mt-4 space-y-3">
            <div class="flex gap-2 text-xs text-slate-500"><span>Noise: ${p.upvote_count}</span><span>Echoes: ${p.copy_count}</span></div>
            <div class="flex flex-wrap gap-2">
              <button onclick="copyPrompt('${p.id}')" class="rounded-md border border-slate-300 px-2 py-1 text-xs">Copy</button>
              <button onclick="noise('${p.id}')" class="rounded-md border border-slate-300 px-2 py-1 text-xs">Noise</button>
              <button onclick="echoPrompt('${p.id}')" class="rounded-md border border-slate-300 px-2 py-1 text-xs">Echo</button>
              ${ownerButtons}
            </div>
          </div>
        </article>`;
      }).join('');
    }

    async function copyPrompt(id) {
      const p = prompts.find(x => x.id === id);
      if (p) await navigator.clipboard.writeText(p.content);
    }
    async function noise(id) {
      try { await api(`/api/prompts/${id}/noise`, { method: 'POST' }); await loadPrompts(); }
      catch (e) { showError(e.message); }
    }
    async function echoPrompt(id) {
      try { const d = await api(`/api/prompts/${id}/echo`, { method: 'POST' }); openComposer(d); await loadPrompts(); }
      catch (e) { showError(e.message); }
    }
    async function openEdit(id) {
      try { openComposer(await api(`/api/prompts/${id}/draft`)); } catch (e) { showError(e.message); }
    }
    async function deletePrompt(id) {
      if (!confirm('Delete this prompt?')) return;
      try { await api(`/api/prompts/${id}`, { method: 'DELETE' }); await loadPrompts(); }
      catch (e) { showError(e.message); }
    }

    function openComposer(d) {
      draft = d || {};
      document.getElementById('composerTitle').textContent = draft.id ? 'Edit Prompt' : 'Compose Prompt';
      document.getElementById('saveBtn').textContent = draft.id ? 'Save Changes' : 'Publish Prompt';
      document.getElementById('fTitle').value = draft.title || '';
      document.getElementById('fCategory').value = draft.category || '';
      document.getElementById('fContent').value = draft.content || '';
      document.getElementById('composer').classList.remove('hidden');
      refreshVariables();
    }
    function closeComposer() { document.getElementById('composer').classList.add('hidden'); }

    function scheduleVariables() { clearTimeout(varTimer); varTimer = setTimeout(refreshVariables, 200); }
    async function refreshVariables() {
      const content = document.getElementById('fContent').value;
      document.getElementById('charCount').textContent = content.length;
      const data = await api('/api/variables', {
        method: 'POST', headers: { 'Content-Type': 'application/json' }, body: JSON.stringify({ content })
      }).catch(() => ({ variables: [], preview_html: '' }));
      document.getElementById('variables').innerHTML = data.variables.length
        ? data.variables.map(v => `<span class="rounded bg-orange-100 px-2 py-1 text-xs font-medium text-orange-900">${escapeHTML(v)}</span>`).join('')
        : 'No variables found. Use syntax like {{client_name}}.';
      document.getElementById('preview').innerHTML = data.preview_html;
    }

    async function suggest(kind) {
      const content = document.getElementById('fContent').value;
      try {
        const data = await api(`/api/suggest/${kind}`, {
          method: 'POST', headers: { 'Content-Type': 'application/json' }, body: JSON.stringify({ content })
        });
        document.getElementById(kind === 'title' ? 'fTitle' : 'fCategory').value = data.suggestion;
      } catch (e) { showError(e.message); }
    }

    async function submitPrompt(event) {
      event.preventDefault();
      const body = {
        title: document.getElementById('fTitle').value,
        category: document.getElementById('fCategory').value,
        content: document.getElementById('fContent').value,
        forked_from: draft.forked_from || null
      };
      const btn = document.getElementById('saveBtn');
      btn.disabled = true;
      try {
        await api(draft.id ? `/api/prompts/${draft.id}` : '/api/prompts', {
          method: draft.id ? 'PUT' : 'POST', headers: { 'Content-Type': 'application/json' }, body: JSON.stringify(body)
        });
        closeComposer();
        showError('');
        await loadPrompts();
      } catch (e) { showError(e.message); }
      btn.disabled = false;
    }

    loadPrompts(true);
  </script>
</body></html>"""
    return _fill(
        template,
        USER_EMAIL=html_mod.escape(user_email),
        USER_ID_JS=_js_string(user_id),
        MAX_TITLE=str(MAX_TITLE_LENGTH),
        MAX_CATEGORY=str(MAX_CATEGORY_LENGTH),
        MAX_PROMPT=str(MAX_PROMPT_LENGTH),
    )


def _js_string(value: str) -> str:
    return json.dumps(value).replace("</", "<\\/")
