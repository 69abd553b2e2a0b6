import asyncio
import logging

import streamlit as st
import streamlit.components.v1 as components

from ai_card_generator import BlueprintGenerator, CardHtmlGenerator, GenerationSettings
from card_renderer import ExportError, describe_export_error, render_card_png
from card_schema import CARD_HEIGHT, CARD_WIDTH, STYLE_OPTIONS
from workflow import WorkflowController, WorkflowState

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

st.set_page_config(
    page_title="AI Knowledge Card Designer",
    layout="wide"
)


def get_controller() -> WorkflowController:
    if 'controller' not in st.session_state:
        settings = GenerationSettings.from_env()
        st.session_state.controller = WorkflowController(
            BlueprintGenerator(settings),
            CardHtmlGenerator(settings),
        )
    return st.session_state.controller


controller = get_controller()

if 'exported_image' not in st.session_state:
    st.session_state.exported_image = None


def run_card(index: int):
    st.session_state.exported_image = None
    with st.spinner("Crafting the card design (with automatic quota retry)..."):
        asyncio.run(controller.generate_card(index))
    st.rerun()


with st.sidebar:
    st.title("AI Knowledge Card Designer")
    st.caption("Expert design system")

    if controller.state != WorkflowState.IDLE:
        if st.button("Start over", use_container_width=True):
            controller.reset()
            st.session_state.exported_image = None
            st.rerun()

    if controller.state in (WorkflowState.IDLE, WorkflowState.ANALYZING):
        style_ids = [s["id"] for s in STYLE_OPTIONS]
        selected_style = st.radio(
            "Visual style",
            style_ids,
            index=style_ids.index(controller.selected_style),
            format_func=lambda sid: next(
                f"{s['name']} · {s['desc']}" for s in STYLE_OPTIONS if s["id"] == sid
            ),
        )
        input_text = st.text_area(
            "Source document",
            value=controller.input_text,
            height=320,
            placeholder="Paste an article, notes or any raw text to turn into cards...",
        )

        if st.button(
            "Build design blueprint",
            type="primary",
            disabled=not input_text.strip(),
            use_container_width=True,
        ):
            with st.spinner("Analyzing the document (with automatic retry)..."):
                asyncio.run(controller.analyze(input_text, selected_style))
            st.rerun()

        if controller.error:
            st.error(controller.error)

    elif controller.blueprint:
        blueprint = controller.blueprint
        st.subheader("Phase 1: design blueprint")
        st.markdown(f"**Style**: `{blueprint.style.value}`")
        st.caption(blueprint.description)
        st.markdown(
            f'<span style="display:inline-block;width:18px;height:18px;border-radius:9px;'
            f'background:{blueprint.themeColor}"></span> '
            f'<span style="display:inline-block;width:18px;height:18px;border-radius:9px;'
            f'background:{blueprint.secondaryColor}"></span> '
            f'{blueprint.fontPairing.heading} / {blueprint.fontPairing.body}',
            unsafe_allow_html=True
        )

        if controller.error:
            st.error(controller.error)

        st.markdown(f"**Card sequence ({blueprint.card_count})**")
        for idx, outline in enumerate(blueprint.cardOutlines):
            label = f"[Cover] {outline.title}" if blueprint.is_cover(idx) else f"{idx + 1}. {outline.title}"
            is_current = controller.current_card is not None and controller.current_card.index == idx
            if st.button(
                label,
                key=f"card_{idx}",
                type="primary" if is_current else "secondary",
                disabled=controller.is_busy,
                use_container_width=True,
            ):
                run_card(idx)

        st.download_button(
            label="Download blueprint JSON",
            data=blueprint.model_dump_json(indent=2),
            file_name="design_blueprint.json",
            mime="application/json",
            use_container_width=True
        )

    st.markdown("---")
    st.caption("Standardized 7:11.6 layout system · crafted for learners")


if controller.state == WorkflowState.IDLE:
    st.header("Ready to create?")
    st.markdown("Turn document fragments into well-balanced, professionally designed knowledge cards.")

elif controller.current_card and controller.state == WorkflowState.CARD_READY:
    card = controller.current_card

    col_next, col_export = st.columns(2)
    with col_next:
        if st.button("Next card", type="primary", disabled=not controller.has_next, use_container_width=True):
            st.session_state.exported_image = None
            with st.spinner("Crafting the next card (with automatic quota retry)..."):
                asyncio.run(controller.next_card())
            st.rerun()
    with col_export:
        if st.button("Export PNG", use_container_width=True):
            try:
                with st.spinner("Rendering image..."):
                    st.session_state.exported_image = asyncio.run(render_card_png(card.html, card.title))
            except ExportError as e:
                logging.getLogger(__name__).exception("[EXPORT] Image export failed")
                st.session_state.exported_image = None
                st.error(describe_export_error(e))

    exported = st.session_state.exported_image
    if exported is not None:
        st.download_button(
            label=f"Download {exported.file_name}",
            data=exported.data,
            file_name=exported.file_name,
            mime="image/png",
            use_container_width=True
        )

    components.html(card.html, width=CARD_WIDTH, height=CARD_HEIGHT, scrolling=False)

    with st.expander("Copy code"):
        st.code(card.html, language="html")

elif controller.blueprint:
    blueprint = controller.blueprint
    st.header("Blueprint ready")
    st.markdown(f"The document was split into **{blueprint.card_count}** knowledge cards.")
    if controller.current_card is not None:
        st.info(f"Last rendered card: {controller.current_card.title}")
    if st.button("Start generating cards", type="primary"):
        run_card(0)
