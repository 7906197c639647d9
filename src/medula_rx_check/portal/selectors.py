from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class PortalSelectors:
    """
    Medula is a JSF web app we do not control; ids and labels may change over time.
    Keep all UI selectors/text hooks here for easy maintenance.

    Selectors are passed into the in-page scripts (see `page_scripts.py`) as arguments, so a markup change
    should only ever touch this file.
    """

    # Login
    username_input: str = 'input[name*="text1"]'
    password_input: str = 'input[type="password"][name*="secret1"]'
    captcha_image: str = 'img[src="/eczane/SayiUretenImageYeniServlet"]'
    captcha_input: str = 'input[name*="j_id_jsp_2072829783_5"]'
    consent_checkbox: str = 'input[name*="kvkkTaahhut"]'
    # Presence of the submit button is what we use to recognise the login form.
    login_submit: str = 'input[type="submit"][value="Giriş Yap"]'
    error_banner: str = "table#box1"

    # Banner texts (substring match, case-insensitive after whitespace normalisation)
    banner_ip_not_authorized: str = "IP bu eczane için giriş yapmaya yetkili değildir"
    banner_invalid_security_code: str = "Geçersiz güvenlik kodu"
    banner_relogin: str = "Yeniden giriş"

    # Navigation (left menu rows; JSF renders the menu as a table)
    left_menu: str = "#form1\\:menu"
    left_menu_row: str = "#form1\\:menu tr"
    menu_index_record_search: int = 5
    menu_index_record_list: int = 3

    # Record search
    search_input: str = 'input[name="form1:text2"]'
    search_button: str = "#form1\\:buttonReceteNoSorgula"

    # Record list (by invoice period)
    list_invoice_type_select: str = "select[name='form1:menu1']"
    list_invoice_type_value: str = "1"
    list_period_select: str = "select[name='form1:menu2']"
    list_query_button: str = "input[name='form1:buttonSonlandirilmamisReceteler']"
    list_table: str = "#form1\\:tableExReceteList"
    list_rows: str = "tbody > tr.rowClass1, tbody > tr.rowClass2"
    # A non-empty message cell means the period has no records.
    list_error: str = "td.message > span.outputText"
    # Pager label rendered as "<current> / <total>".
    list_page_label: str = "#form1\\:text21"
    list_next_page: str = (
        '#form1\\:tableExReceteList a[title="Sonraki"], #form1\\:tableExReceteList input[title="Sonraki"]'
    )

    # Record detail
    detail_table: str = "table#f\\:tbl1"
    detail_recete_no: str = "#f\\:t13"
    detail_facility_code: str = "input[name='f:t33']"
    detail_doctor_department: str = "span#f\\:t45"
    # Dates are only rendered on the record list (see `list_*`); the detail page has no hook for them.
    detail_recete_date: str = ""
    detail_last_transaction_date: str = ""
    detail_rows: str = "tr.rowClass1, tr.rowClass2"
    # JSF row ids: f:tbl1:<idx>:<suffix>
    detail_row_id_prefix: str = "f:tbl1:"

    # Report view (opened from a selected detail row)
    report_open_button: str = "input#f\\:buttonRaporGoruntule"
    report_header: str = 'td.menuHeader:has-text("Rapor Görme")'
    report_header_text: str = "Rapor Görme"
    back_button: str = 'input#f\\:buttonGeriDon, input[type="submit"][value="Geri Dön"]'

    # Report view element ids (JSF ids, looked up with getElementById so colons need no escaping).
    # Patient identity fields (form1:text5, form1:text7, form1:text58) are deliberately absent.
    report_field_ids: tuple[tuple[str, str], ...] = (
        ("raporNo", "form1:text2"),
        ("raporTarihi", "form1:text10"),
        ("protokolNo", "form1:text4"),
        ("duzenlemeTuru", "form1:text12"),
        ("aciklama", "form1:text8"),
        ("kayitSekli", "form1:text15"),
        ("tesisKodu", "form1:text9"),
        ("raporTakipNo", "form1:text74"),
        ("tesisUnvan", "form1:text92"),
    )
    report_notes_table: str = "form1:tableEx2"
    report_diagnoses_table: str = "form1:tableExRaporTeshisList"
    report_doctors_table: str = "form1:tableExRaporDoktorList"
    report_ingredients_table: str = "form1:tableEx1"

    def detect_args(self) -> dict:
        return {
            "detailTable": self.detail_table,
            "receteNo": self.detail_recete_no,
            "loginSubmit": self.login_submit,
        }

    def detail_args(self) -> dict:
        return {
            "detailTable": self.detail_table,
            "receteNo": self.detail_recete_no,
            "facilityCode": self.detail_facility_code,
            "doctorDepartment": self.detail_doctor_department,
            "receteDate": self.detail_recete_date,
            "lastTransactionDate": self.detail_last_transaction_date,
            "rows": self.detail_rows,
            "rowIdPrefix": self.detail_row_id_prefix,
        }

    def list_args(self) -> dict:
        return {
            "table": self.list_table,
            "rows": self.list_rows,
            "error": self.list_error,
            "pageLabel": self.list_page_label,
        }

    def report_args(self) -> dict:
        return {
            "headerText": self.report_header_text,
            "fields": dict(self.report_field_ids),
            "notesTable": self.report_notes_table,
            "diagnosesTable": self.report_diagnoses_table,
            "doctorsTable": self.report_doctors_table,
            "ingredientsTable": self.report_ingredients_table,
        }
