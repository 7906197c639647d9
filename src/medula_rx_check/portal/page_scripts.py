"""
In-page scripts evaluated inside the portal page.

Every script is a JS function expression taking a single argument (selectors and values come from
`PortalSelectors`, never from string interpolation). Scripts return plain JSON-able data; parsing
and validation happen on the Python side.

Bump SCRIPTS_VERSION whenever a script's return shape changes so cached debug artefacts can be told apart.
"""

SCRIPTS_VERSION = "3"

_NORM = r"""
  const norm = (s) => (s || "").replace(/\u00a0/g, " ").replace(/\s+/g, " ").trim();
"""

DETECT_PAGE = (
    r"""
(sel) => {
"""
    + _NORM
    + r"""
  const table = document.querySelector(sel.detailTable);
  const idEl = document.querySelector(sel.receteNo);
  const receteNo = idEl ? norm(idEl.textContent) : "";
  if (table && receteNo) {
    return { kind: "prescription_detail", receteNo };
  }
  if (document.querySelector(sel.loginSubmit)) {
    return { kind: "login_form", receteNo: null };
  }
  return { kind: "other", receteNo: null };
}
"""
)

# JSF forms listen for input/change events; setting `.value` alone is not enough.
FILL_INPUT = r"""
(arg) => {
  const el = document.querySelector(arg.selector);
  if (!el) return false;
  el.focus();
  el.value = arg.value;
  el.dispatchEvent(new Event("input", { bubbles: true }));
  el.dispatchEvent(new Event("change", { bubbles: true }));
  return true;
}
"""

CHECK_BOX = r"""
(arg) => {
  const el = document.querySelector(arg.selector);
  if (!el) return "missing";
  if (el.checked) return "already";
  el.click();
  if (!el.checked) {
    el.checked = true;
    el.dispatchEvent(new Event("change", { bubbles: true }));
  }
  return "checked";
}
"""

READ_TEXT = (
    r"""
(arg) => {
"""
    + _NORM
    + r"""
  const el = document.querySelector(arg.selector);
  if (!el) return null;
  const text = norm(el.innerText || el.textContent);
  return text || null;
}
"""
)

CLICK_NTH = r"""
(arg) => {
  const items = document.querySelectorAll(arg.selector);
  const el = items[arg.index];
  if (!el) return false;
  const target = el.querySelector("a, input[type=submit], button") || el;
  target.click();
  return true;
}
"""

SELECT_ROW = r"""
(arg) => {
  const el = document.getElementById(arg.prefix + arg.index + ":checkbox7");
  if (!el) return false;
  if (!el.checked) el.click();
  return !!el.checked;
}
"""

SCRAPE_DETAIL = (
    r"""
(sel) => {
"""
    + _NORM
    + r"""
  const q = (s) => (s ? document.querySelector(s) : null);
  const textOf = (el) => {
    if (!el) return "";
    const tag = (el.tagName || "").toUpperCase();
    return norm(tag === "INPUT" || tag === "SELECT" ? el.value : el.textContent);
  };
  const table = q(sel.detailTable);
  if (!table) return null;

  const rows = [];
  table.querySelectorAll(sel.rows).forEach((row) => {
    const barkodInput = row.querySelector('input[id$=":t1"]');
    if (!barkodInput) return;
    const id = barkodInput.id || "";
    if (!id.startsWith(sel.rowIdPrefix) || !id.endsWith(":t1")) return;
    const idx = id.slice(sel.rowIdPrefix.length, -3);
    if (!/^\d+$/.test(idx)) return;
    const cell = (suffix) => textOf(document.getElementById(sel.rowIdPrefix + idx + ":" + suffix));
    rows.push({
      index: Number(idx),
      barkod: norm(barkodInput.value),
      ad: cell("t6"),
      adet: cell("t2"),
      periyotSayi: cell("t5"),
      periyotTipi: cell("m1"),
      doz1: cell("t3"),
      doz2: cell("t4"),
      rapor: cell("t9"),
      verilebilecegi: cell("t10"),
    });
  });

  return {
    receteNo: textOf(q(sel.receteNo)),
    tesisKodu: textOf(q(sel.facilityCode)),
    doktorBrans: textOf(q(sel.doctorDepartment)),
    receteTarihi: textOf(q(sel.receteDate)),
    sonIslemTarihi: textOf(q(sel.lastTransactionDate)),
    rows,
  };
}
"""
)

SCRAPE_REPORT = (
    r"""
(sel) => {
"""
    + _NORM
    + r"""
  const onReport = Array.from(document.querySelectorAll("td.menuHeader"))
    .some((td) => norm(td.textContent).includes(sel.headerText));
  if (!onReport) return null;

  const byId = (id) => {
    const el = document.getElementById(id);
    return el ? norm(el.textContent) : "";
  };
  const dataRows = (table, direct) => {
    if (!table) return [];
    const q = direct
      ? ":scope > tbody > tr.rowClass1, :scope > tbody > tr.rowClass2"
      : "tr.rowClass1, tr.rowClass2";
    return Array.from(table.querySelectorAll(q));
  };
  const span = (row, suffix) => {
    const el = row.querySelector('span[id$=":' + suffix + '"]');
    return el ? norm(el.textContent) : "";
  };

  const fields = {};
  Object.entries(sel.fields).forEach(([key, id]) => { fields[key] = byId(id); });

  const aciklamalar = dataRows(document.getElementById(sel.notesTable), false)
    .map((r) => ({ aciklama: span(r, "text43"), eklenmeZamani: span(r, "text891") }))
    .filter((n) => n.aciklama || n.eklenmeZamani);

  const teshisler = [];
  dataRows(document.getElementById(sel.diagnosesTable), true).forEach((row) => {
    const tds = row.querySelectorAll(":scope > td");
    const grup = span(row, "text77");
    const baslangic = tds[2] ? norm(tds[2].textContent) : "";
    const bitis = tds[3] ? norm(tds[3].textContent) : "";
    const kodlar = Array.from(row.querySelectorAll('table[id$=":tableEx4"] > tbody > tr'))
      .map((r) => ({ icd10: span(r, "text78"), tanim: span(r, "text82") }))
      .filter((k) => k.icd10);
    if (grup || kodlar.length || baslangic || bitis) {
      teshisler.push({ grup, baslangic, bitis, kodlar });
    }
  });

  const doktorlar = dataRows(document.getElementById(sel.doctorsTable), false)
    .map((r) => ({ brans: span(r, "text96") }));

  const etkinMaddeler = dataRows(document.getElementById(sel.ingredientsTable), false).map((r) => ({
    kod: span(r, "text62"),
    ad: span(r, "text63"),
    form: span(r, "text65"),
    tedaviSema: span(r, "text76"),
    adet: span(r, "text66"),
    icerik: span(r, "text64"),
    eklenmeTarihi: span(r, "text24"),
  }));

  return { ...fields, aciklamalar, teshisler, doktorlar, etkinMaddeler };
}
"""
)

SELECT_OPTION = r"""
(arg) => {
  const el = document.querySelector(arg.selector);
  if (!el) return false;
  const opt = Array.from(el.options || []).find((o) => o.value === arg.value);
  if (!opt) return false;
  el.value = arg.value;
  el.dispatchEvent(new Event("input", { bubbles: true }));
  el.dispatchEvent(new Event("change", { bubbles: true }));
  return true;
}
"""

# Patient name columns (4 and 5) are never read.
SCRAPE_LIST = (
    r"""
(sel) => {
"""
    + _NORM
    + r"""
  const errEl = document.querySelector(sel.error);
  const error = errEl ? norm(errEl.textContent) : "";
  const table = document.querySelector(sel.table);
  const labelEl = document.querySelector(sel.pageLabel);
  const pageLabel = labelEl ? norm(labelEl.textContent) : "";
  if (!table) return { error, pageLabel, rows: null };

  const col = (tds, i) => {
    const td = tds[i];
    if (!td) return "";
    const span = td.querySelector("span");
    return norm((span || td).textContent);
  };
  const rows = Array.from(table.querySelectorAll(sel.rows)).map((tr) => {
    const tds = tr.querySelectorAll(":scope > td");
    return {
      receteNo: col(tds, 1),
      sonIslemTarihi: col(tds, 2),
      receteTarihi: col(tds, 3),
      kapsam: col(tds, 6),
    };
  });
  return { error, pageLabel, rows };
}
"""
)
