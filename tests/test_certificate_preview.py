from io import BytesIO

from PIL import Image
from reportlab.pdfgen import canvas

from certdesk.app import db
from certdesk.services.certificates_preview import (
    build_preview_tree,
    generate_preview,
    preview_template_html,
    render_html,
    render_png,
)
from certdesk.services.certificate_templates import (
    add_dynamic_element,
    add_shape_element,
    add_text_element,
    create_template,
    update_template,
)
from certdesk.shared.certificates_layout import (
    DynamicElement,
    ShapeElement,
    TemplateSnapshot,
    TextElement,
)
from certdesk.shared.certificates_render import render


def _tree(zoom=1.0):
    snapshot = TemplateSnapshot(
        name="t",
        width=816,
        height=1056,
        elements=(
            TextElement(id="title", content="<Best> & Brightest", font_weight="bold"),
            DynamicElement(id="name", field="student_name", letter_spacing=2),
            ShapeElement(id="seal", shape="circle", border_style="dashed", fill_color="#ffcc00"),
            ShapeElement(id="rule", shape="line", y=500, height=2, border_width=2, opacity=0.5),
        ),
    )
    return render(snapshot, {"student_name": "Nur Aina"}, zoom=zoom)


def test_html_escapes_text_and_keeps_order():
    html = str(render_html(_tree()))
    assert "&lt;Best&gt; &amp; Brightest" in html
    assert "<Best>" not in html
    assert html.index('data-element-id="title"') < html.index('data-element-id="seal"')
    assert "z-index:1" in html and "z-index:4" in html
    assert "width:816px" in html and "height:1056px" in html


def test_html_circle_uses_half_radius():
    html = str(render_html(_tree()))
    assert "border-radius:50%" in html
    assert "border:1px dashed #000000" in html


def test_html_zoom_scales_boxes():
    html = str(render_html(_tree(zoom=0.5)))
    assert "width:408px" in html
    assert "left:50px" in html


def test_png_matches_canvas_size():
    result = render_png(_tree())
    image = Image.open(BytesIO(result.png_bytes()))
    assert image.size == (816, 1056)
    half = Image.open(BytesIO(render_png(_tree(zoom=0.5)).png_bytes()))
    assert half.size == (408, 528)


def test_png_is_cached_by_fingerprint():
    first = render_png(_tree())
    assert render_png(_tree()) is first


def test_png_draws_shape_fill():
    image = Image.open(BytesIO(render_png(_tree()).png_bytes())).convert("RGB")
    # Center of the seal circle (x=100..500, y=300..400).
    assert image.getpixel((300, 350)) == (255, 204, 0)


def test_generate_preview_uses_sample_values(app):
    template = create_template("Sample")
    add_text_element(template, "Hello")
    add_dynamic_element(template, "student_name")
    add_shape_element(template, "circle")
    tree = build_preview_tree(template)
    assert tree.nodes[1].text == "Sample Student Name"
    result = generate_preview(template, zoom=0.5)
    assert Image.open(BytesIO(result.png_bytes())).size == (561, 396)


def test_preview_with_student_values(app, make_student):
    template = create_template("Sample")
    add_dynamic_element(template, "student_name")
    student = make_student("Nur Aina")
    tree = build_preview_tree(template, student=student)
    assert tree.nodes[0].text == "Nur Aina"


def test_missing_background_is_a_warning(app):
    template = create_template("Sample", background_image="certificates/backgrounds/gone.png")
    markup, warnings = preview_template_html(template)
    assert "cert-canvas" in str(markup)
    assert any("gone.png" in w for w in warnings)


def test_pdf_background_renders_in_preview(app, tmp_path):
    bg_path = tmp_path / "certificates" / "backgrounds" / "frame.pdf"
    bg_path.parent.mkdir(parents=True)
    c = canvas.Canvas(str(bg_path), pagesize=(841.5, 594.75))
    c.drawString(50, 50, "background")
    c.save()
    template = create_template("Framed")
    update_template(template, background_image="certificates/backgrounds/frame.pdf")
    db.session.refresh(template)
    result = generate_preview(template)
    assert Image.open(BytesIO(result.png_bytes())).size == (1122, 793)
    assert result.warnings == ()
